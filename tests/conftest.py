import json

import httpx
import pytest

from dartdoc_llm import CompletionClient


def chat_reply(text, status_code=200):
    return httpx.Response(status_code, json={"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]})


def request_json(request):
    return json.loads(request.content)


@pytest.fixture
def requests_seen():
    return []


@pytest.fixture
def mock_client(requests_seen):
    """Factory for a CompletionClient whose requests go to `handler` and are recorded in `requests_seen`."""

    def factory(handler, cfg=None, api_key='test-key'):
        def recorder(request):
            requests_seen.append(request)
            return handler(request)
        return CompletionClient(api_key, cfg, transport=httpx.MockTransport(recorder))
    return factory


@pytest.fixture
def replies():
    """Handler that answers successive requests with the given texts (chat style)."""

    def make(*texts):
        queue = list(texts)

        def handler(request):
            return chat_reply(queue.pop(0))
        return handler
    return make
