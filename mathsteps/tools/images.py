"""Image loading and encoding for multimodal model requests."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from pathlib import Path
from typing import Union

PathLike = Union[str, Path]

DEFAULT_MEDIA_TYPE = "image/png"

_MEDIA_TYPES_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


class ImageUnavailableError(RuntimeError):
    """Raised when an image path does not point to a readable file."""


@dataclass(frozen=True)
class ImagePayload:
    """Base64-encoded image ready to be embedded in a chat message."""

    data_base64: str
    media_type: str

    @property
    def data_url(self) -> str:
        return "data:{};base64,{}".format(self.media_type, self.data_base64)


def guess_image_media_type(path: PathLike) -> str:
    """Maps a file extension to its image MIME type, defaulting to PNG."""
    return _MEDIA_TYPES_BY_SUFFIX.get(Path(path).suffix.lower(), DEFAULT_MEDIA_TYPE)


def ensure_image_available(path: PathLike) -> Path:
    """Checks that `path` is an existing regular file.

    Raises:
        ImageUnavailableError: If the file is missing or not a regular file.
    """
    resolved = Path(path).expanduser()
    if not resolved.is_file():
        raise ImageUnavailableError("Image file not found: {}".format(path))
    return resolved


def read_image_bytes(path: PathLike) -> bytes:
    resolved = ensure_image_available(path)
    try:
        return resolved.read_bytes()
    except OSError as exc:
        raise ImageUnavailableError("Image file not readable: {}: {}".format(path, exc)) from exc


def load_image_payload(path: PathLike) -> ImagePayload:
    """Reads an image from disk and encodes it for a model request.

    Args:
        path: Local image path.

    Returns:
        Encoded payload with the MIME type inferred from the extension.

    Raises:
        ImageUnavailableError: If the image cannot be read.
    """
    raw = read_image_bytes(path)
    return ImagePayload(
        data_base64=base64.b64encode(raw).decode("ascii"),
        media_type=guess_image_media_type(path),
    )
