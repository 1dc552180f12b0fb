from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from errors import BackendStreamError, BackendUnavailable, InvalidRequest


class ChatMessage(BaseModel):
    role: str = Field(min_length=1)
    content: str


class TokenEvent(BaseModel):
    type: Literal["token"] = "token"
    text: str

    def payload(self) -> dict[str, Any]:
        return {"content": self.text}


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    full_text: str

    def payload(self) -> dict[str, Any]:
        return {"message": self.full_text}


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    code: str = BackendStreamError.code

    def payload(self) -> dict[str, Any]:
        return {"error": self.message}


StreamEvent = TokenEvent | DoneEvent | ErrorEvent


def format_sse(event: StreamEvent) -> str:
    data = json.dumps(event.payload(), ensure_ascii=False)
    return f"event: {event.type}\ndata: {data}\n\n"


def validate_messages(raw: Any) -> list[ChatMessage]:
    if not isinstance(raw, list) or not raw:
        raise InvalidRequest("messages must be a non-empty array")
    messages: list[ChatMessage] = []
    for index, item in enumerate(raw):
        try:
            messages.append(ChatMessage.model_validate(item))
        except ValidationError as exc:
            raise InvalidRequest(
                f"messages[{index}] must be an object with string role and content"
            ) from exc
    return messages


class StreamingProxy:
    def __init__(
        self,
        client: Any,
        *,
        frequency_penalty: float | None = None,
        presence_penalty: float | None = None,
        log: Callable[[str, str], None] | None = None,
    ) -> None:
        self.client = client
        self.frequency_penalty = frequency_penalty
        self.presence_penalty = presence_penalty
        self.log = log

    def _request_options(
        self, messages: list[ChatMessage], model: str, temperature: float
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "stream": True,
            "messages": [message.model_dump() for message in messages],
        }
        if self.frequency_penalty is not None:
            options["frequency_penalty"] = self.frequency_penalty
        if self.presence_penalty is not None:
            options["presence_penalty"] = self.presence_penalty
        return options

    async def stream(
        self, messages: list[ChatMessage], *, model: str, temperature: float
    ) -> AsyncIterator[StreamEvent]:
        try:
            backend_stream = await self.client.chat.completions.create(
                **self._request_options(messages, model, temperature)
            )
        except Exception as exc:
            yield ErrorEvent(
                message=f"Backend unavailable: {exc}", code=BackendUnavailable.code
            )
            return

        parts: list[str] = []
        try:
            async for chunk in backend_stream:
                choices = getattr(chunk, "choices", None)
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                content = getattr(delta, "content", None) if delta is not None else None
                if content:
                    parts.append(content)
                    yield TokenEvent(text=content)
                if getattr(choice, "finish_reason", None):
                    break
        except Exception as exc:
            yield ErrorEvent(message=f"Backend stream failed: {exc}")
            return
        finally:
            try:
                await backend_stream.close()
            except Exception as exc:
                if self.log is not None:
                    self.log("warn", f"backend stream close failed: {exc}")

        yield DoneEvent(full_text="".join(parts))
