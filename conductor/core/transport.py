"""Decision-call transport over OpenAI-compatible chat-completions APIs.

ChatCompletionsClient is an async callable matching the DecisionCaller
signature used by the gateway. It never raises: HTTP errors, timeouts and
malformed bodies all come back as DecisionResponse(success=False).
"""

import logging

import httpx

from conductor.core.models import DecisionProvider, DecisionRequest, DecisionResponse, TokenUsage

logger = logging.getLogger(__name__)

BASE_URLS: dict[DecisionProvider, str] = {
    DecisionProvider.GROQ: "https://api.groq.com/openai/v1",
    DecisionProvider.OPENAI: "https://api.openai.com/v1",
}

DEFAULT_TIMEOUT = 15.0
MAX_TOKENS = 200


class ChatCompletionsClient:
    """Async decision caller backed by httpx.AsyncClient."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = MAX_TOKENS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_tokens = max_tokens
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ChatCompletionsClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __call__(self, request: DecisionRequest) -> DecisionResponse:
        url = f"{BASE_URLS[request.provider]}/chat/completions"
        payload = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Authorization": f"Bearer {request.api_key}"}

        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"{request.provider.value} decision call timed out")
            return DecisionResponse.failure("Request timed out")
        except httpx.HTTPError as e:
            logger.warning(f"{request.provider.value} decision call failed: {e}")
            return DecisionResponse.failure(f"Network error: {e}")

        if response.status_code != 200:
            detail = _error_message(response)
            return DecisionResponse.failure(f"API error {response.status_code}: {detail}")

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            return DecisionResponse.failure(f"Malformed response body: {e}")

        usage = data.get("usage")
        return DecisionResponse(
            success=True,
            content=(content or "").strip(),
            usage=TokenUsage.model_validate(usage) if isinstance(usage, dict) else None,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.text[:200]
