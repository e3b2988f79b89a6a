"""
Request shapes and the request decoder.

A deployment proxies exactly one upstream endpoint, and the shape of the
requests it accepts is fixed with it: chat-style message lists or legacy
single-prompt completions. The shape knows where to find the text to
tokenize, both in the request and in each streamed response chunk.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import BadRequest


class ChatMessage(BaseModel):
    content: Optional[str] = None


class ChatCompletionBody(BaseModel):
    model: str = Field(min_length=1)
    messages: List[ChatMessage]
    stream: bool = False


class PromptCompletionBody(BaseModel):
    model: str = Field(min_length=1)
    prompt: Union[str, List[str]] = ""
    stream: bool = False


@dataclass(frozen=True)
class DecodedRequest:
    """Normalized view of an inbound request.

    ``raw_body`` is forwarded upstream as-is; the other fields only drive
    tokenizer selection and accounting.
    """
    model: str
    stream: bool
    prompt_fragments: Tuple[str, ...]
    raw_body: bytes


class RequestShape:
    """Base class for the request shapes a deployment can serve."""

    name: str = ""
    path: str = ""
    body_model: Type[BaseModel] = BaseModel

    def prompt_fragments(self, body: Any) -> List[str]:
        raise NotImplementedError

    def chunk_text(self, choice: Any) -> str:
        """Return the completion text carried by one streamed choice.

        Raises:
            ValueError: If the choice does not have the expected structure
        """
        raise NotImplementedError

    def decode(self, raw_body: bytes) -> DecodedRequest:
        """Parse a raw request body.

        Raises:
            BadRequest: If the body is not valid JSON of this shape
        """
        try:
            body = self.body_model.model_validate_json(raw_body)
        except ValidationError as e:
            raise BadRequest(f"failed to parse request body: {_summarize(e)}") from e
        return DecodedRequest(
            model=body.model,
            stream=body.stream,
            prompt_fragments=tuple(self.prompt_fragments(body)),
            raw_body=raw_body,
        )


class ChatShape(RequestShape):
    name = "chat"
    path = "/v1/chat/completions"
    body_model = ChatCompletionBody

    def prompt_fragments(self, body: ChatCompletionBody) -> List[str]:
        return [m.content or "" for m in body.messages]

    def chunk_text(self, choice: Any) -> str:
        if not isinstance(choice, dict):
            raise ValueError("choice is not an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("delta is not an object")
        return _text_or_empty(delta.get("content"), "delta content")


class PromptShape(RequestShape):
    name = "prompt"
    path = "/v1/completions"
    body_model = PromptCompletionBody

    def prompt_fragments(self, body: PromptCompletionBody) -> List[str]:
        if isinstance(body.prompt, str):
            return [body.prompt]
        return list(body.prompt)

    def chunk_text(self, choice: Any) -> str:
        if not isinstance(choice, dict):
            raise ValueError("choice is not an object")
        return _text_or_empty(choice.get("text"), "choice text")


REQUEST_SHAPES: Dict[str, RequestShape] = {
    shape.name: shape for shape in (ChatShape(), PromptShape())
}


def get_request_shape(name: str) -> RequestShape:
    """Look up a request shape by name.

    Raises:
        ValueError: If the shape is unknown
    """
    try:
        return REQUEST_SHAPES[name]
    except KeyError:
        raise ValueError(
            f"Unknown request shape {name!r}, expected one of: {sorted(REQUEST_SHAPES)}"
        ) from None


def _text_or_empty(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{what} is not a string")
    return value


def _summarize(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{location}: {first.get('msg', 'invalid')}"
