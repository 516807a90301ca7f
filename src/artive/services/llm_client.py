"""Streaming chat-completion client for OpenAI-compatible APIs (OpenRouter by default)."""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from artive.models.config import LLMConfig
from artive.services.exceptions import UpstreamUnavailable
from artive.utils.logging import get_logger


logger = get_logger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


def _extract_delta_content(data: Dict[str, Any]) -> str | None:
    """
    Extract the text delta from an OpenAI-style streaming chunk.

    Chunks look like:
    {
        "choices": [{
            "delta": {"content": "..."},
            "finish_reason": null
        }]
    }

    Args:
        data: Parsed JSON chunk

    Returns:
        Content string if present, None otherwise
    """
    try:
        if "choices" in data and len(data["choices"]) > 0:
            choice = data["choices"][0]
            if "delta" in choice and "content" in choice["delta"]:
                return choice["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        pass
    return None


async def iter_sse_data(text_chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Split decoded network chunks into SSE ``data:`` payloads.

    A network chunk can end in the middle of a line, so the incomplete
    trailing line is kept and prefixed to the next chunk. Blank lines and
    comment lines (starting with ':') are dropped. A final unterminated line
    is still emitted when the stream ends.

    Args:
        text_chunks: Decoded text chunks in arrival order

    Yields:
        The payload of each data line, without the prefix
    """
    pending = ""

    async for chunk in text_chunks:
        pending += chunk
        lines = pending.split("\n")
        # Last element is incomplete (or empty when the chunk ended on a newline)
        pending = lines.pop()

        for line in lines:
            payload = _sse_payload(line)
            if payload is not None:
                yield payload

    payload = _sse_payload(pending)
    if payload is not None:
        yield payload


def _sse_payload(line: str) -> str | None:
    line = line.rstrip("\r")
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    return line[len(SSE_DATA_PREFIX):].lstrip(" ")


class LLMClient:
    """
    HTTP client for streaming chat completions.

    Connection failures before the response starts are retried; once text
    is flowing, a transport error ends the stream early instead of raising,
    so callers keep what was received.
    """

    def __init__(self, config: LLMConfig):
        """
        Initialize LLM client.

        Args:
            config: LLM configuration (endpoint, API key, model aliases)
        """
        self.config = config
        self.timeout = httpx.Timeout(
            connect=10.0,
            read=None,  # No per-read cap while the model is generating
            write=10.0,
            pool=10.0
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.config.app_url,
            "X-Title": self.config.app_title,
        }

    async def stream_completion(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_retries: int = 1,
        retry_delay: float = 2.0,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Stream text deltas of one chat completion.

        Args:
            model: Model key (resolved through the configured aliases) or provider model id
            system_prompt: System prompt
            user_prompt: Compiled user prompt
            max_retries: Retries for connection failures before the response starts
            retry_delay: Delay in seconds between retries
            request_id: Optional identifier for this request (for logging/tracing)

        Yields:
            Text fragments in arrival order; none is meaningful on its own

        Raises:
            UpstreamUnavailable: Missing API key, non-2xx response, or connection
                failures after retries are exhausted

        Example:
            >>> async for delta in client.stream_completion(
            ...     model="claude-4",
            ...     system_prompt=REWRITE_SYSTEM_PROMPT,
            ...     user_prompt=prompt,
            ... ):
            ...     buffer += delta
        """
        if not request_id:
            current_task = asyncio.current_task()
            task_name = current_task.get_name() if current_task else None
            request_id = task_name if task_name and task_name != "None" else "unknown"

        if not self.config.api_key:
            raise UpstreamUnavailable("OpenRouter API key not configured")

        model_id = self.config.resolve_model(model)
        url = str(self.config.endpoint).rstrip("/") + "/chat/completions"

        payload = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "stream": True,
        }

        logger.info(
            "llm_request_started",
            request_id=request_id,
            model=model,
            model_id=model_id,
            endpoint=url,
            prompt_length=len(user_prompt),
            system_prompt_length=len(system_prompt),
        )

        logger.debug(
            "llm_request_payload",
            request_id=request_id,
            payload=payload,
        )

        attempt = 0

        while attempt <= max_retries:
            started = False
            delta_count = 0

            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    async with client.stream("POST", url, json=payload, headers=self._headers()) as response:
                        if response.status_code < 200 or response.status_code >= 300:
                            body = await response.aread()
                            detail = body.decode("utf-8", errors="replace")[:500]
                            logger.error(
                                "llm_http_error",
                                request_id=request_id,
                                status_code=response.status_code,
                                body=detail,
                            )
                            raise UpstreamUnavailable(
                                f"OpenRouter API失败: {response.status_code}",
                                status_code=response.status_code,
                            )

                        started = True

                        try:
                            async for data in iter_sse_data(response.aiter_text()):
                                if data == SSE_DONE:
                                    logger.debug("llm_response_sse_done", request_id=request_id)
                                    break

                                try:
                                    chunk = json.loads(data)
                                except json.JSONDecodeError as e:
                                    logger.warning(
                                        "llm_malformed_sse_line",
                                        request_id=request_id,
                                        line=data,
                                        error=str(e),
                                    )
                                    continue

                                delta = _extract_delta_content(chunk) if isinstance(chunk, dict) else None
                                if delta:
                                    delta_count += 1
                                    yield delta

                        except httpx.TransportError as e:
                            # Keep what arrived; the caller extracts from the partial text
                            logger.warning(
                                "llm_stream_truncated",
                                request_id=request_id,
                                delta_count=delta_count,
                                error=str(e),
                                error_type=type(e).__name__,
                            )

                logger.info(
                    "llm_request_completed",
                    request_id=request_id,
                    delta_count=delta_count,
                )
                return

            except httpx.TransportError as e:
                if started:
                    # Raised while closing a stream that already delivered text
                    logger.warning("llm_stream_close_error", request_id=request_id, error=str(e))
                    return

                attempt += 1

                logger.warning(
                    "llm_request_retry",
                    request_id=request_id,
                    attempt=attempt,
                    max_retries=max_retries,
                    error=str(e),
                    retry_delay=retry_delay
                )

                if attempt <= max_retries:
                    await asyncio.sleep(retry_delay)
                else:
                    logger.error(
                        "llm_request_failed",
                        request_id=request_id,
                        attempts=attempt,
                        error=str(e)
                    )
                    raise UpstreamUnavailable(f"无法连接AI服务: {e}") from e
