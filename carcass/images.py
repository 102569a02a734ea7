"""
OS images stored as base volumes in hypervisor storage pools.

An image named ``debian11`` lives in the volume ``debian11-base.qcow2`` of
its pool: the volume name is derived from the image name and format, it is
never stored. The path or URL each image was copied from is kept in a
source map, a JSON file of the data directory, for information only: the
hypervisor is the reference for which images exist.
"""

import functools
import json
import os
import re
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from .config import Config
from .exceptions import (
    CarcassError,
    ImageDropError,
    ImageExistsError,
    ImageSourceError,
    ImageStoreError,
    ResourceNotFoundError,
    SourceMapError,
    TransferError,
    VolumeCreateError,
)
from .hypervisor import Hypervisor
from .logging import get_logger
from .models import Image
from .transfer import VolumeTransfer
from .xml_templates import DEFAULT_VOLUME_FORMAT

logger = get_logger(__name__)

SOURCE_MAP_FILE = "image-sources.json"

_BASE_VOLUME = re.compile(r"^(?P<name>.+)-base\.(?P<format>[A-Za-z0-9]+)$")

SourceMap = Dict[str, Dict[str, str]]


def image_volume_name(name: str, fmt: str = "") -> str:
    """Volume name holding the image: ``<name>-base.<format>``."""
    return f"{name}-base.{fmt or DEFAULT_VOLUME_FORMAT}"


def parse_image_volume_name(volume_name: str) -> Optional[Tuple[str, str]]:
    """Recover (image name, format) from a volume name, None if it is not an image."""
    match = _BASE_VOLUME.match(os.path.basename(volume_name))
    if match is None:
        return None
    return match.group("name"), match.group("format")


def image_name_from_volume(volume_name: str) -> str:
    """Image name of a base volume name or path, empty if it is not one."""
    parsed = parse_image_volume_name(volume_name)
    return parsed[0] if parsed else ""


class ImageSource:
    """Readable data of an image along with its exact size in bytes."""

    def __init__(self, reader: BinaryIO, length: int, closer: Optional[Callable[[], None]] = None):
        self.reader = reader
        self.length = length
        self._closer = closer or reader.close

    def read(self, size: int = -1) -> bytes:
        return self.reader.read(size)

    def close(self) -> None:
        self._closer()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open_image_source(source: str, timeout: int = 60) -> ImageSource:
    """
    Open an image source: a path, a file:// URL or an http(s):// URL.

    The size must be known before sending anything since it is the capacity
    of the volume, an HTTP response without Content-Length is rejected.
    """
    url = urlparse(source)

    if url.scheme in ("http", "https"):
        try:
            response = requests.get(source, stream=True, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ImageSourceError(f"http get failed: {e}", {"source": source}) from e

        length = response.headers.get("Content-Length")
        if length is None or not length.isdigit():
            response.close()
            raise ImageSourceError(
                f"unknown size of {source}, no Content-Length in response", {"source": source}
            )

        return ImageSource(response.raw, int(length), response.close)

    if url.scheme in ("file", ""):
        path = unquote(url.path) if url.scheme == "file" else source
        try:
            f = open(path, "rb")
        except OSError as e:
            raise ImageSourceError(f"{path}: {e.strerror}", {"source": source}) from e

        try:
            length = os.fstat(f.fileno()).st_size
        except OSError as e:
            f.close()
            raise ImageSourceError(f"stat failed on {path}: {e.strerror}", {"source": source}) from e

        return ImageSource(f, length)

    raise ImageSourceError(f"unsupported URL: {source}", {"source": source})


def source_map_path(directory) -> Path:
    return Path(os.path.normpath(os.path.join(directory, SOURCE_MAP_FILE)))


def read_source_map(directory) -> SourceMap:
    """Read the source map of the directory, a missing file is an empty map."""
    path = source_map_path(directory)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except OSError as e:
        raise SourceMapError(f"could not read source map file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SourceMapError(f"could not decode source map file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
        raise SourceMapError(f"unexpected content in source map file {path}")

    return data


def write_source_map(directory, source_map: SourceMap) -> None:
    """Rewrite the whole source map file of the directory."""
    path = source_map_path(directory)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(source_map, f, indent=2)
    except OSError as e:
        raise SourceMapError(f"could not save source map file {path}: {e}") from e


def add_provenance(directory, pool: str, name: str, source: str) -> None:
    """Register where the image of the pool comes from."""
    source_map = read_source_map(directory)
    source_map.setdefault(pool, {})[name] = source
    write_source_map(directory, source_map)


def remove_provenance(directory, pool: str, name: str) -> None:
    """Forget where the image of the pool comes from."""
    source_map = read_source_map(directory)

    if name not in source_map.get(pool, {}):
        return

    del source_map[pool][name]
    write_source_map(directory, source_map)


class ImageStore:
    """Storage of OS images in the pools of a hypervisor."""

    def __init__(self, hypervisor: Hypervisor, config: Config):
        self.hypervisor = hypervisor
        self.config = config
        self.transfer = VolumeTransfer(hypervisor, config.storage.chunk_size)

    def new_image(self, name: str, source: str = "", pool: Optional[str] = None) -> Image:
        """Build an image of the configured pool."""
        return Image(name=name, pool=pool or self.config.storage.pool, source=source)

    def exists(self, image: Image) -> bool:
        """Tell if the volume of the image exists."""
        return self.hypervisor.volume_exists(image.pool, image_volume_name(image.name, image.format))

    def store(
        self,
        image: Image,
        opener: Optional[Callable[[str], ImageSource]] = None,
    ) -> None:
        """
        Copy the data of the image source into a new volume of its pool.

        The source is only opened once it is known the image does not exist
        yet. When the upload fails the volume is removed.
        """
        vol_name = image_volume_name(image.name, image.format)

        try:
            exists = self.exists(image)
        except CarcassError as e:
            raise ImageStoreError(f"image store: {e}", {"image": image.name}) from e

        if exists:
            raise ImageExistsError(
                f"image store: image {image.name} already exists in pool {image.pool}",
                {"image": image.name, "pool": image.pool, "volume": vol_name},
            )

        if opener is None:
            opener = functools.partial(open_image_source, timeout=self.config.storage.http_timeout)

        try:
            data = opener(image.source)
        except CarcassError as e:
            raise ImageStoreError(f"image store: {e}", {"image": image.name}) from e

        with data:
            try:
                self.transfer.upload(
                    image.pool, vol_name, data, data.length,
                    image.format or DEFAULT_VOLUME_FORMAT,
                )
            except VolumeCreateError as e:
                raise ImageStoreError(
                    f"image store: volume create failed: {e}", {"image": image.name}
                ) from e
            except TransferError as e:
                self._clean_failed_upload(image, vol_name, e)

        logger.info(f"stored image {image.name} in pool {image.pool} from {image.source}")

    def _clean_failed_upload(self, image: Image, vol_name: str, err: TransferError) -> None:
        details = {"image": image.name, "pool": image.pool, "volume": vol_name}

        try:
            self.hypervisor.remove_volume(image.pool, vol_name)
        except ResourceNotFoundError:
            pass
        except CarcassError as cleanup_err:
            logger.error(f"could not remove volume {vol_name} after failed upload: {cleanup_err}")
            raise ImageStoreError(
                f"image store: could not clean volume: {cleanup_err} on upload failure: {err}",
                {**details, "cleanup_error": str(cleanup_err)},
            ) from err

        raise ImageStoreError(f"image store: volume upload failed: {err}", details) from err

    def drop(self, image: Image) -> None:
        """Remove the volume of the image, nothing to do if it does not exist."""
        vol_name = image_volume_name(image.name, image.format)

        try:
            if not self.exists(image):
                return
            self.hypervisor.remove_volume(image.pool, vol_name)
        except ResourceNotFoundError:
            return
        except CarcassError as e:
            raise ImageDropError(
                f"image drop: {e}", {"image": image.name, "pool": image.pool}
            ) from e

        logger.info(f"dropped image {image.name} from pool {image.pool}")

    def list(self, pool: Optional[str] = None, provenance_dir=None) -> List[Image]:
        """
        List the images of a pool from its base volumes.

        Sources come from the source map of provenance_dir when given; an
        image without an entry has an empty source.
        """
        pool = pool or self.config.storage.pool

        sources: Dict[str, str] = {}
        if provenance_dir:
            try:
                sources = read_source_map(provenance_dir).get(pool, {})
            except SourceMapError as e:
                logger.warning(f"ignoring image sources: {e}")

        images = []
        for vol in self.hypervisor.list_volumes(pool):
            parsed = parse_image_volume_name(vol.name)
            if parsed is None:
                continue

            name, suffix = parsed
            images.append(Image(
                name=name,
                pool=pool,
                source=sources.get(name, ""),
                path=vol.path,
                format=vol.format or suffix,
                capacity=vol.capacity,
                size=vol.size,
            ))

        return images
