"""Render engines: turn render settings plus one source item into image bytes.

The engine is opaque to the pipeline. Whatever it raises is classified by
the worker: `PermanentExecutionError` fails the job outright, anything else
is retried.
"""

import io
from abc import ABC, abstractmethod

from PIL import Image, ImageOps, UnidentifiedImageError

from errors import ArtifactMissingError, PermanentExecutionError, TransientExecutionError
from models import RenderSettings

PIL_FORMATS = {"png": "PNG", "jpg": "JPEG", "jpeg": "JPEG", "webp": "WEBP"}


class RenderEngine(ABC):
    @abstractmethod
    def render(self, settings: RenderSettings, item_ref: str) -> bytes:
        ...


class PillowRenderEngine(RenderEngine):
    """Fits each source image onto a width x height canvas and encodes it."""

    def __init__(self, source):
        # source: any store with get(ref) -> bytes
        self.source = source

    def render(self, settings: RenderSettings, item_ref: str) -> bytes:
        try:
            data = self.source.get(item_ref)
        except ArtifactMissingError as e:
            raise PermanentExecutionError(f"Source item {item_ref} not found") from e

        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise PermanentExecutionError(f"Source item {item_ref} is not a readable image: {e}") from e
        except OSError as e:
            raise PermanentExecutionError(f"Source item {item_ref} is truncated or corrupt: {e}") from e

        return self._encode(self._fit(image, settings), settings)

    def _fit(self, image, settings):
        image = ImageOps.exif_transpose(image)
        target = (settings.width, settings.height)
        if settings.format in ("jpg", "jpeg"):
            image = image.convert("RGB")
        elif image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA")
        return ImageOps.pad(image, target, method=Image.LANCZOS, color=(0, 0, 0, 0) if image.mode == "RGBA" else (0, 0, 0))

    def _encode(self, image, settings):
        out = io.BytesIO()
        dpi = (72 * settings.scale, 72 * settings.scale)
        fmt = PIL_FORMATS[settings.format]
        params = {"dpi": dpi}
        if fmt in ("JPEG", "WEBP"):
            params["quality"] = settings.quality
        if fmt == "PNG":
            params["optimize"] = True
        try:
            image.save(out, format=fmt, **params)
        except OSError as e:
            raise TransientExecutionError(f"Encoding {fmt} failed: {e}") from e
        return out.getvalue()
