import logging
from typing import AsyncIterator, Dict, Optional

import httpx

from ..utils import NetworkFailure, ServerRejection, TimeoutFailure
from .base import ProgressCallback, Transport, TransportRequest, TransportResponse

logger = logging.getLogger(__name__)

STREAM_SLICE_SIZE = 64 * 1024


class HttpxTransport(Transport):
    """`Transport` implementation on top of `httpx.AsyncClient`.

    Multipart bodies are encoded up front and then streamed to the socket in
    64 KiB slices, which lets the caller observe how many body bytes have
    been handed over while the request is still in flight.

    Attributes:
        base_url (str): Prefix for relative request URLs.
        timeout (float): Default per-call timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
        )

    async def send(self, request: TransportRequest, on_progress: Optional[ProgressCallback] = None) -> TransportResponse:
        timeout = httpx.Timeout(request.timeout if request.timeout is not None else self.timeout)
        try:
            http_request = self._build_request(request, timeout, on_progress)
            response = await self.client.send(http_request)
        except httpx.TimeoutException as e:
            raise TimeoutFailure(f"{request.method} {request.url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkFailure(f"{request.method} {request.url} failed: {e}") from e

        if response.status_code >= 400:
            logger.debug(f"{request.method} {request.url} rejected with HTTP {response.status_code}")
            raise ServerRejection(
                f"HTTP {response.status_code}: {response.reason_phrase}", status_code=response.status_code
            )

        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.content,
        )

    def _build_request(
        self,
        request: TransportRequest,
        timeout: httpx.Timeout,
        on_progress: Optional[ProgressCallback],
    ) -> httpx.Request:
        if not request.is_multipart:
            return self.client.build_request(
                request.method,
                request.url,
                headers=request.headers,
                json=request.json,
                data=request.data,
                timeout=timeout,
            )

        data, files = request.data, request.files
        if not files:
            # Form fields only; httpx switches to multipart when given file parts
            data, files = None, {name: (None, value) for name, value in (request.data or {}).items()}
        encoded = self.client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            data=data,
            files=files,
            timeout=timeout,
        )
        body = encoded.read()
        headers = httpx.Headers(encoded.headers)
        headers["Content-Length"] = str(len(body))
        return self.client.build_request(
            request.method,
            request.url,
            headers=headers,
            content=_stream_body(body, on_progress),
            timeout=timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


async def _stream_body(body: bytes, on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
    total = len(body)
    sent = 0
    while sent < total:
        piece = body[sent:sent + STREAM_SLICE_SIZE]
        yield piece
        sent += len(piece)
        if on_progress:
            on_progress(sent, total)
