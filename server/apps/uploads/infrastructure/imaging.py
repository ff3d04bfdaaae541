"""Image inspection and derivative rendering with Pillow."""

import dataclasses
import io
import logging
from typing import Final, final

from PIL import Image, ImageOps, UnidentifiedImageError

_OPTIMIZED_QUALITY: Final = 85
_THUMBNAIL_QUALITY: Final = 80
_BACKGROUND: Final = (255, 255, 255)
_ALPHA_MODES: Final = frozenset(('RGBA', 'LA', 'PA'))

logger = logging.getLogger(__name__)


class UnreadableImageError(ValueError):
    """Image bytes cannot be decoded."""


class ImageTooLargeError(ValueError):
    """Image dimensions exceed the allowed maximum."""


@final
@dataclasses.dataclass(frozen=True, slots=True)
class ImageInfo:
    """Facts read from an image header."""

    width: int
    height: int
    format: str
    mode: str
    has_alpha: bool
    is_progressive: bool

    def as_metadata(self) -> dict[str, object]:
        """Serialize for ``FileRecord.metadata``."""
        return {
            'width': self.width,
            'height': self.height,
            'format': self.format,
            'color_mode': self.mode,
            'has_alpha': self.has_alpha,
            'is_progressive': self.is_progressive,
        }


def inspect_image(data: bytes, max_dimension: int | None = None) -> ImageInfo:
    """Read image header and verify the image decodes.

    Dimensions are checked from the header, before pixel data is decoded.

    Args:
        data: Image bytes.
        max_dimension: Optional limit for width and height.

    Returns:
        Image facts.

    Raises:
        UnreadableImageError: If Pillow cannot decode the image.
        ImageTooLargeError: If a dimension exceeds max_dimension.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            if max_dimension is not None and max(width, height) > max_dimension:
                raise ImageTooLargeError(
                    f'Image is {width}x{height}, '
                    f'maximum is {max_dimension}x{max_dimension}',
                )
            info = ImageInfo(
                width=width,
                height=height,
                format=image.format or '',
                mode=image.mode,
                has_alpha=_has_alpha(image),
                is_progressive=bool(
                    image.info.get('progressive') or image.info.get('progression'),
                ),
            )
            image.verify()
    except ImageTooLargeError:
        raise
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as error:
        raise UnreadableImageError(f'Cannot decode image: {error}') from error

    return info


def render_optimized(data: bytes, max_dimension: int) -> bytes:
    """Render a web-friendly JPEG bounded by max_dimension.

    Images smaller than the bound keep their size.

    Args:
        data: Source image bytes.
        max_dimension: Longest allowed side in pixels.

    Returns:
        Progressive JPEG bytes.
    """
    with Image.open(io.BytesIO(data)) as source:
        image = _to_rgb(ImageOps.exif_transpose(source))
        image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        return _encode_jpeg(image, _OPTIMIZED_QUALITY, progressive=True)


def render_thumbnail(data: bytes, size: int) -> bytes:
    """Render a square, centre-cropped JPEG thumbnail.

    Args:
        data: Source image bytes (any format Pillow reads, e.g. PNG).
        size: Side of the square in pixels.

    Returns:
        JPEG bytes.
    """
    with Image.open(io.BytesIO(data)) as source:
        image = _to_rgb(ImageOps.exif_transpose(source))
        thumbnail = ImageOps.fit(image, (size, size), Image.Resampling.LANCZOS)
        return _encode_jpeg(thumbnail, _THUMBNAIL_QUALITY, progressive=False)


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in _ALPHA_MODES or 'transparency' in image.info


def _to_rgb(image: Image.Image) -> Image.Image:
    """Flatten transparency onto white and convert to RGB."""
    if image.mode == 'RGB':
        return image
    if _has_alpha(image):
        rgba = image.convert('RGBA')
        background = Image.new('RGB', rgba.size, _BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel('A'))
        return background
    return image.convert('RGB')


def _encode_jpeg(image: Image.Image, quality: int, *, progressive: bool) -> bytes:
    buffer = io.BytesIO()
    image.save(
        buffer,
        format='JPEG',
        quality=quality,
        optimize=True,
        progressive=progressive,
    )
    return buffer.getvalue()
