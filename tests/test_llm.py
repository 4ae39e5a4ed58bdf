import httpx
import pytest

from conftest import chat_reply, request_json
from dartdoc_llm import (
    CHAT_ENDPOINT,
    COMPLETION_ENDPOINT,
    DEFAULT_TEMPLATE,
    BackendError,
    GenerationConfig,
    PromptTemplate,
    build_messages,
    format_completion_prompt,
)

DIV = 'double div(double x, double y) => x / y;'


def test_chat_reply_is_returned_verbatim(mock_client, requests_seen):
    client = mock_client(lambda request: chat_reply('\n/// Divides [x] by [y].\n'))
    messages = build_messages(DEFAULT_TEMPLATE, 'div', DIV)
    assert client.generate(messages) == '\n/// Divides [x] by [y].\n'

    assert len(requests_seen) == 1
    request = requests_seen[0]
    assert request.method == 'POST'
    assert str(request.url) == CHAT_ENDPOINT
    assert request.headers['Authorization'] == 'Bearer test-key'
    assert request.headers['Content-Type'] == 'application/json'
    body = request_json(request)
    assert body['model'] == GenerationConfig().model
    assert body['max_tokens'] == 100
    assert body['temperature'] == 0.5
    assert body['messages'] == messages
    assert 'prompt' not in body


def test_completion_style_sends_a_prompt(mock_client, requests_seen):
    cfg = GenerationConfig(api_style='completion', model='text-davinci-003')
    client = mock_client(lambda request: httpx.Response(200, json={'choices': [{'text': '\n\n/// Divides.'}]}), cfg)
    assert client.generate(build_messages(DEFAULT_TEMPLATE, 'div', DIV)) == '\n\n/// Divides.'

    request = requests_seen[0]
    assert str(request.url) == COMPLETION_ENDPOINT
    body = request_json(request)
    assert 'messages' not in body
    assert body['model'] == 'text-davinci-003'
    assert body['prompt'].endswith('[assistant]\n')
    assert DIV in body['prompt']


def test_non_200_is_a_backend_error(mock_client):
    client = mock_client(lambda request: httpx.Response(500, text='upstream exploded'))
    with pytest.raises(BackendError) as info:
        client.generate(build_messages(DEFAULT_TEMPLATE, 'div', DIV))
    assert info.value.status_code == 500
    assert info.value.body == 'upstream exploded'
    assert '500' in str(info.value)
    assert 'upstream exploded' in str(info.value)


@pytest.mark.parametrize('response', [
    httpx.Response(200, text='<html>not json</html>'),
    httpx.Response(200, json=['not', 'an', 'object']),
    httpx.Response(200, json={'choices': []}),
    httpx.Response(200, json={'choices': [{'message': {'role': 'assistant'}}]}),
    httpx.Response(200, json={'error': 'nope'}),
])
def test_malformed_replies_are_backend_errors(mock_client, response):
    client = mock_client(lambda request: response)
    with pytest.raises(BackendError, match='Malformed'):
        client.generate(build_messages(DEFAULT_TEMPLATE, 'div', DIV))


def test_transport_failure_is_a_backend_error(mock_client):
    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    client = mock_client(handler)
    with pytest.raises(BackendError, match='connection refused') as info:
        client.generate(build_messages(DEFAULT_TEMPLATE, 'div', DIV))
    assert info.value.status_code is None


def test_empty_messages_are_rejected(mock_client):
    client = mock_client(lambda request: chat_reply('unused'))
    with pytest.raises(ValueError):
        client.generate([])


def test_client_is_a_context_manager(mock_client):
    with mock_client(lambda request: chat_reply('/// ok')) as client:
        assert client.generate([{'role': 'user', 'content': 'hi'}]) == '/// ok'


def test_build_messages_layout():
    messages = build_messages(DEFAULT_TEMPLATE, 'area', 'double area() => w * h;')
    assert messages[0] == {'role': 'system', 'content': DEFAULT_TEMPLATE.preamble}
    assert [m['role'] for m in messages[1:]] == ['user', 'assistant', 'user']
    assert 'div' in messages[1]['content']
    assert messages[2]['content'].startswith('/// Calculates the division')
    assert 'area' in messages[-1]['content']
    assert messages[-1]['content'].endswith('double area() => w * h;\n')


def test_template_without_examples():
    template = PromptTemplate(preamble='Write docs.')
    messages = build_messages(template, 'f', 'void f() {}')
    assert [m['role'] for m in messages] == ['system', 'user']


def test_format_completion_prompt():
    prompt = format_completion_prompt([
        {'role': 'system', 'content': 'Be brief.'},
        {'role': 'user', 'content': 'void f() {}'},
    ])
    assert prompt == '[system]\nBe brief.\n\n[user]\nvoid f() {}\n[assistant]\n'


def test_config_defaults():
    cfg = GenerationConfig()
    assert cfg.endpoint == CHAT_ENDPOINT
    assert cfg.timeout is None
    assert GenerationConfig(api_style='completion').endpoint == COMPLETION_ENDPOINT


def test_config_from_env():
    cfg = GenerationConfig.from_env({
        'DARTDOC_MODEL': 'my-model',
        'DARTDOC_MAX_TOKENS': '42',
        'DARTDOC_TEMPERATURE': '0',
        'DARTDOC_API_STYLE': 'completion',
        'DARTDOC_TIMEOUT': '30',
        'DARTDOC_ENDPOINT': '',
    })
    assert cfg.model == 'my-model'
    assert cfg.max_tokens == 42
    assert cfg.temperature == 0.0
    assert cfg.api_style == 'completion'
    assert cfg.endpoint == COMPLETION_ENDPOINT
    assert cfg.timeout == 30.0


def test_config_from_process_env(monkeypatch):
    monkeypatch.setenv('DARTDOC_ENDPOINT', 'http://localhost:8080/v1/chat/completions')
    assert GenerationConfig.from_env().endpoint == 'http://localhost:8080/v1/chat/completions'


@pytest.mark.parametrize('environ, match', [
    ({'DARTDOC_MAX_TOKENS': 'lots'}, 'DARTDOC_MAX_TOKENS'),
    ({'DARTDOC_TEMPERATURE': 'warm'}, 'DARTDOC_TEMPERATURE'),
    ({'DARTDOC_API_STYLE': 'telepathy'}, 'api_style'),
    ({'DARTDOC_MAX_TOKENS': '0'}, 'max_tokens'),
])
def test_config_rejects_bad_values(environ, match):
    with pytest.raises(ValueError, match=match):
        GenerationConfig.from_env(environ)
