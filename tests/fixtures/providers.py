"""Canned provider responses served through ``httpx.MockTransport``.

Tests hand one of these clients to ``ProviderVerifier`` or
``OAuthConnectionManager`` so no request ever leaves the process.
"""

from collections.abc import Callable

import httpx

MockHandler = Callable[[httpx.Request], httpx.Response]

OPENAI_MODELS = {
    "data": [
        {"id": "gpt-4o"},
        {"id": "gpt-4o-mini"},
        {"id": "text-embedding-3-small"},
        {"id": "whisper-1"},
    ]
}
GOOGLE_MODELS = {
    "models": [
        {"name": "models/gemini-1.5-pro"},
        {"name": "models/embedding-001"},
    ]
}
MISTRAL_MODELS = {"data": [{"id": "mistral-large-latest"}, {"id": "open-mistral-7b"}]}
COHERE_MODELS = {"models": [{"name": "command-r"}, {"name": "embed-english-v3.0"}]}


def mock_client(handler: MockHandler) -> httpx.AsyncClient:
    """HTTP client whose every request is answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RecordingHandler:
    """Reply from a queue of responses and keep every request.

    The last queued reply is repeated once the others are used up. Queue an
    exception instance to have the transport raise it.
    """

    def __init__(self, *replies: httpx.Response | Exception) -> None:
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]


def recording_client(*replies: httpx.Response | Exception) -> tuple[httpx.AsyncClient, RecordingHandler]:
    """Mock client plus the handler that records what it was sent."""
    handler = RecordingHandler(*replies)
    return mock_client(handler), handler
