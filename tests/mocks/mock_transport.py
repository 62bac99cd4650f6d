import asyncio
import inspect
import io
import json
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from minder_resilience.clients.base import Transport, TransportRequest, TransportResponse
from minder_resilience.utils import ServerRejection


def json_response(data: Any, status_code: int = 200) -> TransportResponse:
    return TransportResponse(status_code=status_code, content=json.dumps(data).encode('utf-8'))


class MockTransport(Transport):
    """In-memory `Transport` double.

    Every request is recorded. The handler receives the request and returns a
    `TransportResponse`, an exception instance (which is raised), or an
    awaitable of either. Multipart bodies report progress in two steps.
    """

    def __init__(self, handler: Optional[Callable[[TransportRequest], Any]] = None):
        self.requests: List[TransportRequest] = []
        self.handler = handler or (lambda request: json_response({}))
        self.closed = False

    async def send(self, request: TransportRequest, on_progress=None) -> TransportResponse:
        self.requests.append(request)
        if on_progress and request.is_multipart:
            total = sum(len(f[1]) for f in (request.files or {}).values())
            if total:
                on_progress(total // 2, total)
                await asyncio.sleep(0)
                on_progress(total, total)

        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True

    def urls(self) -> List[str]:
        return [r.url for r in self.requests]


class MockUploadServer:
    """Handler emulating the direct and chunked upload endpoints."""

    def __init__(self, session_id: str = "session-1", result: Optional[Dict[str, Any]] = None):
        self.session_id = session_id
        self.result = result or {"url": "https://cdn.example.com/file"}
        self.chunks: List[bytes] = []
        self.chunk_fields: List[Dict[str, str]] = []
        self.init_fields: Optional[Dict[str, str]] = None
        self.finalize_fields: Optional[Dict[str, str]] = None
        self.fail_chunk_indexes: List[int] = []

    def __call__(self, request: TransportRequest) -> Any:
        if request.url.endswith('/init'):
            self.init_fields = dict(request.data or {})
            return json_response({"sessionId": self.session_id})
        if request.url.endswith('/chunk'):
            index = int(request.data['chunkIndex'])
            if index in self.fail_chunk_indexes:
                self.fail_chunk_indexes.remove(index)
                return ServerRejection("HTTP 503: Service Unavailable", status_code=503)
            self.chunks.append(request.files['chunk'][1])
            self.chunk_fields.append(dict(request.data))
            return json_response({"received": index})
        if request.url.endswith('/finalize'):
            self.finalize_fields = dict(request.data or {})
            return json_response(self.result)
        return json_response(self.result)


def make_image_bytes(width: int, height: int, image_format: str = "PNG", color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=image_format)
    return buffer.getvalue()
