"""
Streaming upload of data into hypervisor storage volumes.

The data is sent through the hypervisor API so the caller does not need
access to the storage of the hypervisor.
"""

from typing import BinaryIO

import libvirt
from libvirt import libvirtError

from .exceptions import CarcassError, DriverCapabilityGap, TransferError
from .hypervisor import Hypervisor
from .logging import LogContext, get_logger, log_performance
from .xml_templates import DEFAULT_VOLUME_FORMAT

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 1024

# Some drivers cannot finish a stream, the data is already written then
UNSUPPORTED_FINISH = (libvirt.VIR_FROM_STREAMS, libvirt.VIR_ERR_NO_SUPPORT)


def check_finish_error(err: libvirtError) -> None:
    """Raise DriverCapabilityGap when err only reports an unsupported finish."""
    if (err.get_error_domain(), err.get_error_code()) == UNSUPPORTED_FINISH:
        raise DriverCapabilityGap(f"stream finish not supported by the driver: {err}") from err


class VolumeTransfer:
    """Upload of a byte stream of known length into a new volume."""

    def __init__(self, hypervisor: Hypervisor, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError(f"chunk size must be positive, got {chunk_size}")
        self.hypervisor = hypervisor
        self.chunk_size = chunk_size

    @log_performance(threshold_ms=5000.0)
    def upload(
        self,
        pool: str,
        name: str,
        reader: BinaryIO,
        length: int,
        fmt: str = DEFAULT_VOLUME_FORMAT,
    ) -> int:
        """
        Create the volume ``name`` of ``length`` bytes in ``pool`` and fill it
        with the data read from ``reader``.

        The volume is left in place when the upload fails, removing it is up
        to the caller.

        Raises:
            VolumeCreateError: the volume could not be created
            TransferError: the data could not be sent

        Returns:
            the number of bytes sent
        """
        self.hypervisor.create_volume(pool, name, length, fmt)

        with LogContext(pool=pool, volume=name) as log:
            try:
                stream = self.hypervisor.new_stream()
            except CarcassError as e:
                raise TransferError(
                    f"could not open stream to volume {name}: {e}",
                    {"pool": pool, "volume": name},
                ) from e

            try:
                with self.hypervisor.volume_handle(pool, name) as sv:
                    sv.upload(stream, 0, length, 0)
            except (CarcassError, libvirtError) as e:
                raise self._abort(stream, f"could not start upload to volume {name}: {e}") from e

            log.debug(f"uploading {length} bytes to {pool}/{name}")
            sent = self._send_all(stream, reader)
            self._finish(stream, name)
            log.info(f"uploaded {sent} bytes to volume {name} in pool {pool}")

        return sent

    def _send_all(self, stream: libvirt.virStream, reader: BinaryIO) -> int:
        total = 0
        while True:
            try:
                chunk = reader.read(self.chunk_size)
            except Exception as e:
                raise self._abort(stream, f"could not read input: {e}") from e

            if not chunk:
                break

            # a short write sends the rest of the same chunk again
            offset = 0
            while offset < len(chunk):
                try:
                    sent = stream.send(chunk[offset:])
                except libvirtError as e:
                    raise self._abort(stream, f"stream send failed: {e}") from e

                if sent <= 0:
                    raise self._abort(stream, f"stream send returned {sent}")
                offset += sent

            total += len(chunk)

        return total

    def _abort(self, stream: libvirt.virStream, message: str) -> TransferError:
        """Abort the stream and build the error to raise."""
        try:
            stream.abort()
        except libvirtError as abort_err:
            logger.error(f"stream abort failed: {abort_err}")
            return TransferError(
                f"stream abort failed: {abort_err} and {message}",
                {"abort_error": str(abort_err)},
            )
        return TransferError(message)

    def _finish(self, stream: libvirt.virStream, name: str) -> None:
        try:
            try:
                stream.finish()
            except libvirtError as e:
                check_finish_error(e)
                raise TransferError(f"stream finish failed: {e}", {"volume": name}) from e
        except DriverCapabilityGap as gap:
            logger.info(f"{gap}, upload of {name} considered complete")
