import abc
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

# (field name) -> (filename, content, content type)
FileField = Tuple[str, bytes, str]
ProgressCallback = Callable[[int, int], None]


@dataclass
class TransportRequest:
    """A platform independent description of one HTTP exchange.

    Exactly one body form is used: `json` for queued mutations, `data`
    (+ optional `files`) for multipart uploads.
    """
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json: Any = None
    data: Optional[Dict[str, str]] = None
    files: Optional[Dict[str, FileField]] = None
    timeout: Optional[float] = None
    multipart: bool = False

    @property
    def is_multipart(self) -> bool:
        return self.multipart or bool(self.files)


@dataclass
class TransportResponse:
    """The part of an HTTP response the resilience layer cares about."""
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        if not self.content:
            return None
        return json.loads(self.content.decode('utf-8'))


class Transport(abc.ABC):
    """An abstract network capability: `send(request) -> response | error`.

    One concrete implementation is injected per target platform.
    Implementations must raise `NetworkFailure` / `TimeoutFailure` for
    transport problems and `ServerRejection` for HTTP statuses >= 400, so
    that retry accounting engages.
    """

    @abc.abstractmethod
    async def send(self, request: TransportRequest, on_progress: Optional[ProgressCallback] = None) -> TransportResponse:
        """Performs the request.

        Args:
            request: What to send.
            on_progress: Optional callback receiving (bytes_sent, body_total)
                while the request body is being transmitted.
        """
        pass

    async def aclose(self) -> None:
        """Releases any pooled connections. Default: nothing to release."""
        return None

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
