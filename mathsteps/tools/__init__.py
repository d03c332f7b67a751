"""Image helpers used by the model-backed stages."""

from .images import ImagePayload, ImageUnavailableError, guess_image_media_type, load_image_payload

__all__ = [
    "ImagePayload",
    "ImageUnavailableError",
    "guess_image_media_type",
    "load_image_payload",
]
