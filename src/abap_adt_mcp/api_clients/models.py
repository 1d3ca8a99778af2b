"""Result types returned by the ADT client."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class AdtResponse:
    """Normalised HTTP response: status, lower-cased headers, text body."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""


@dataclass
class Message:
    """One activation or syntax-check message.

    ``type`` is ``error``, ``warning``, ``info`` or ``success``;
    ``severity`` keeps the raw ADT code (``E``, ``W``, ...).
    """

    type: str
    message: str
    severity: str = "I"
    line: Optional[int] = None
    column: Optional[int] = None
    object_uri: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.type == "error"

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ActivationResult:
    success: bool
    messages: List[Message] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class SyntaxCheckResult:
    has_errors: bool
    messages: List[Message] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_errors": self.has_errors,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class SearchResult:
    uri: str
    name: str
    type: str
    package: Optional[str] = None
    description: Optional[str] = None


@dataclass
class TransportRequest:
    number: str
    description: str
    owner: str
    status: str
