from __future__ import annotations

import abc
import dataclasses
import logging
import math
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..clients.base import Transport, TransportRequest, TransportResponse
from ..utils import ServerRejection

if TYPE_CHECKING:
    from ..core_logic.cancellation import TransferController
    from ..core_logic.progress import ProgressChannel, ProgressTracker
    from ..core_logic.transfer_manager import ChunkedOptions, UploadFile, UploadTransfer

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclasses.dataclass(frozen=True)
class ChunkSpec:
    """One bounded segment of a payload."""
    index: int
    offset: int
    length: int


def plan_chunks(total: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[ChunkSpec]:
    """Slices `total` bytes into ceil(total / chunk_size) sequential segments.

    Every segment is `chunk_size` long except the last one, which holds the
    remainder and is never empty.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if total <= 0:
        return []
    count = math.ceil(total / chunk_size)
    return [
        ChunkSpec(index=i, offset=i * chunk_size, length=min(chunk_size, total - i * chunk_size))
        for i in range(count)
    ]


def _json_body(response: TransportResponse) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ServerRejection(f"Upload endpoint returned a non-JSON body: {e}", status_code=response.status_code) from e


class UploadStrategy(abc.ABC):
    """Abstract base class for the ways a payload can be sent."""

    name = "abstract"

    def __init__(self, transport: Transport, endpoint: str, headers: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = None):
        self.transport = transport
        self.endpoint = endpoint.rstrip('/')
        self.headers = dict(headers or {})
        self.timeout = timeout

    @abc.abstractmethod
    async def upload(
        self,
        file: "UploadFile",
        transfer: "UploadTransfer",
        controller: "TransferController",
        tracker: "ProgressTracker",
        channel: "ProgressChannel",
    ) -> Any:
        """Sends `file` once, from the first byte. Returns the server's result."""
        pass


class DirectUploadStrategy(UploadStrategy):
    """One multipart POST carrying the whole file."""

    name = "direct"

    async def upload(self, file, transfer, controller, tracker, channel) -> Any:
        def on_progress(sent: int, body_total: int) -> None:
            if body_total > 0:
                channel.publish(tracker.update(file.size * sent // body_total))

        request = TransportRequest(
            method='POST',
            url=self.endpoint,
            headers=self.headers,
            data={'filename': file.name, 'size': str(file.size), 'type': file.mime_type},
            files={'file': (file.name, file.data, file.mime_type)},
            timeout=self.timeout,
        )
        response = await controller.run(self.transport.send(request, on_progress))
        transfer.chunks_sent = 1
        logger.info(f"Upload complete: {file.name}")
        return _json_body(response)


class ChunkScheduler:
    """Drives the init -> chunk* -> finalize protocol for one transfer.

    Chunks are sent strictly one after another in index order; the
    cancellation token is checked before each of them. Progress counts the
    bytes of completed chunks plus the share of the in-flight chunk the
    transport has handed over.
    """

    def __init__(self, transport: Transport, endpoint: str, headers: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = None):
        self.transport = transport
        self.endpoint = endpoint.rstrip('/')
        self.headers = dict(headers or {})
        self.timeout = timeout

    def _request(self, phase: str, data: Dict[str, str], files: Optional[Dict[str, Any]] = None) -> TransportRequest:
        return TransportRequest(
            method='POST',
            url=f"{self.endpoint}/{phase}",
            headers=self.headers,
            data=data,
            files=files,
            timeout=self.timeout,
            multipart=True,
        )

    async def run(self, file, transfer, controller, tracker, channel) -> Any:
        plan = plan_chunks(file.size, transfer.chunk_size)
        transfer.total_chunks = len(plan)
        total_chunks = str(len(plan))
        logger.info(f"Chunked upload: {file.name} ({len(plan)} chunks)")

        init_response = await controller.run(self.transport.send(self._request('init', {
            'filename': file.name,
            'size': str(file.size),
            'type': file.mime_type,
            'chunks': total_chunks,
        })))
        init_data = _json_body(init_response) or {}
        session_id = init_data.get('sessionId') if isinstance(init_data, dict) else None
        if not session_id:
            raise ServerRejection("Upload init response did not include a sessionId",
                                  status_code=init_response.status_code)
        transfer.session_id = str(session_id)
        logger.debug(f"Upload session {transfer.session_id} opened for {file.name}")

        for spec in plan:
            controller.raise_if_cancelled()
            await self._send_chunk(file, transfer, spec, total_chunks, controller, tracker, channel)
            transfer.chunks_sent += 1
            channel.publish(tracker.update(spec.offset + spec.length))
            logger.debug(f"Chunk {spec.index + 1}/{len(plan)} uploaded")

        controller.raise_if_cancelled()
        finalize_response = await controller.run(self.transport.send(self._request(
            'finalize',
            {'sessionId': transfer.session_id},
        )))
        logger.info(f"Chunked upload complete: {file.name}")
        return _json_body(finalize_response)

    async def _send_chunk(self, file, transfer, spec: ChunkSpec, total_chunks: str,
                          controller, tracker, channel) -> None:
        def on_progress(sent: int, body_total: int) -> None:
            if body_total > 0:
                channel.publish(tracker.update(spec.offset + spec.length * sent // body_total))

        request = self._request('chunk', {
            'sessionId': transfer.session_id,
            'chunkIndex': str(spec.index),
            'totalChunks': total_chunks,
        }, files={'chunk': (file.name, file.slice(spec.offset, spec.length), 'application/octet-stream')})
        await controller.run(self.transport.send(request, on_progress))


class ChunkedUploadStrategy(UploadStrategy):
    """Sequential chunked upload under a server-assigned session id."""

    name = "chunked"

    async def upload(self, file, transfer, controller, tracker, channel) -> Any:
        scheduler = ChunkScheduler(self.transport, self.endpoint, self.headers, self.timeout)
        return await scheduler.run(file, transfer, controller, tracker, channel)


def use_chunked(size: int, chunked: Optional["ChunkedOptions"]) -> bool:
    """Chunked only when explicitly enabled and the payload exceeds one chunk."""
    return bool(chunked and chunked.enabled and size > chunked.chunk_size)


def get_upload_strategy(
    size: int,
    chunked: Optional["ChunkedOptions"],
    transport: Transport,
    endpoint: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> UploadStrategy:
    """Factory function returning the strategy for a payload of `size` bytes."""
    if use_chunked(size, chunked):
        return ChunkedUploadStrategy(transport, endpoint, headers, timeout)
    return DirectUploadStrategy(transport, endpoint, headers, timeout)
