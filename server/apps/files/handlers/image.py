"""Image handlers built on Pillow.

``ResizeHandler`` and ``ThumbnailHandler`` read their size tiers from
the ``modes`` option: a mapping of handler mode to ``[width, height]``.
Each configured mode produces one derivative.
"""

from collections.abc import Mapping
from io import BytesIO
from types import MappingProxyType
from typing import Any, Final, final, override

from PIL import Image, ImageOps

from server.apps.files.handlers.base import (
    DerivationContext,
    Derivative,
    Handler,
    SourceFile,
)

_DEFAULT_QUALITY: Final = 85
_PREVIEW_SIZE: Final = (800, 800)
_PREVIEW_BACKGROUND: Final = (255, 255, 255)
_JPEG: Final = 'JPEG'

# Output formats kept as is, anything else becomes PNG
_EXTENSIONS: Final = MappingProxyType({
    'JPEG': 'jpg',
    'PNG': 'png',
    'GIF': 'gif',
    'WEBP': 'webp',
})


def open_image(source: SourceFile) -> Image.Image:
    """Decode the source bytes as an image.

    EXIF orientation is applied so derivatives are upright.

    Args:
        source: File being handled.

    Returns:
        Fully loaded image.
    """
    with Image.open(BytesIO(source.data)) as image:
        image.load()
        oriented = ImageOps.exif_transpose(image)
        oriented.format = image.format
        return oriented


def encode_image(
    image: Image.Image,
    image_format: str,
    quality: int = _DEFAULT_QUALITY,
) -> bytes:
    """Encode an image to bytes.

    Args:
        image: Image to encode.
        image_format: Pillow format name.
        quality: Quality for lossy formats.

    Returns:
        Encoded bytes.
    """
    if image_format == _JPEG:
        image = flatten(image)
    buffer = BytesIO()
    image.save(buffer, format=image_format, quality=quality)
    return buffer.getvalue()


def flatten(image: Image.Image) -> Image.Image:
    """Convert to RGB, painting transparency white.

    Args:
        image: Image in any mode.

    Returns:
        RGB image.
    """
    if image.mode == 'RGB':
        return image
    if image.mode in {'RGBA', 'LA', 'P'}:
        rgba = image.convert('RGBA')
        background = Image.new('RGB', rgba.size, _PREVIEW_BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel('A'))
        return background
    return image.convert('RGB')


def _output_format(image: Image.Image) -> str:
    if image.format in _EXTENSIONS:
        return image.format
    return 'PNG'


def _mime_and_extension(image_format: str) -> tuple[str, str]:
    return Image.MIME[image_format], _EXTENSIONS[image_format]


def _modes(options: Mapping[str, Any]) -> dict[str, tuple[int, int]]:
    modes = {}
    for mode, bounds in options.get('modes', {}).items():
        width, height = bounds
        modes[mode] = (int(width), int(height))
    return modes


@final
class ImagePropertiesHandler(Handler):
    """Dimensions and format of an image original."""

    @override
    def extract_basic_properties(self, source: SourceFile) -> Mapping[str, Any]:
        image = open_image(source)
        return {'width': image.width, 'height': image.height}

    @override
    def extract_additional_properties(
        self,
        source: SourceFile,
    ) -> Mapping[str, Any]:
        image = open_image(source)
        return {
            'width': image.width,
            'height': image.height,
            'format': image.format,
            'color_mode': image.mode,
        }


@final
class ResizeHandler(Handler):
    """Scales the image down to fit each configured mode.

    Images are never enlarged and keep their aspect ratio.
    """

    @override
    def produce(
        self,
        source: SourceFile,
        context: DerivationContext,
    ) -> list[Derivative]:
        image = open_image(source)
        image_format = _output_format(image)
        mime, extension = _mime_and_extension(image_format)
        quality = int(context.options.get('quality', _DEFAULT_QUALITY))

        derivatives = []
        for mode, bounds in _modes(context.options).items():
            resized = image.copy()
            resized.thumbnail(bounds, Image.Resampling.LANCZOS)
            derivatives.append(context.save(
                encode_image(resized, image_format, quality),
                source=source,
                mime=mime,
                extension=extension,
                handler_mode=mode,
                options={'width': resized.width, 'height': resized.height},
            ))
        return derivatives


@final
class ThumbnailHandler(Handler):
    """Crops the image to exactly the size of each configured mode."""

    @override
    def produce(
        self,
        source: SourceFile,
        context: DerivationContext,
    ) -> list[Derivative]:
        image = open_image(source)
        image_format = _output_format(image)
        mime, extension = _mime_and_extension(image_format)
        quality = int(context.options.get('quality', _DEFAULT_QUALITY))

        derivatives = []
        for mode, bounds in _modes(context.options).items():
            thumbnail = ImageOps.fit(image, bounds, Image.Resampling.LANCZOS)
            derivatives.append(context.save(
                encode_image(thumbnail, image_format, quality),
                source=source,
                mime=mime,
                extension=extension,
                handler_mode=mode,
                options={'width': thumbnail.width, 'height': thumbnail.height},
            ))
        return derivatives


@final
class PreviewHandler(Handler):
    """Writes one reduced JPEG preview of the image."""

    @override
    def produce(
        self,
        source: SourceFile,
        context: DerivationContext,
    ) -> list[Derivative]:
        width, height = context.options.get('size', _PREVIEW_SIZE)
        quality = int(context.options.get('quality', _DEFAULT_QUALITY))

        preview = flatten(open_image(source))
        preview.thumbnail((int(width), int(height)), Image.Resampling.LANCZOS)
        return [context.save(
            encode_image(preview, _JPEG, quality),
            source=source,
            mime='image/jpeg',
            extension='jpg',
            options={'width': preview.width, 'height': preview.height},
        )]
