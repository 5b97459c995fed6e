import base64
import io
import logging
import re

from PIL import Image, ImageDraw, UnidentifiedImageError

from wizard import MaskPoint, SourceImage


logger = logging.getLogger(__name__)

FORMAT_EXTENSIONS = {
    'JPEG': 'jpg',
    'PNG': 'png',
    'WEBP': 'webp',
    'GIF': 'gif',
    'BMP': 'bmp',
}

GRID_DIVISIONS = 10
MARKER_RADIUS = 12

_NUMBER = r'(\d+(?:\.\d+)?)(%?)'
POINT_PATTERN = re.compile(
    rf'^\s*(?:x\s*=\s*)?{_NUMBER}\s*[,;\s]\s*(?:y\s*=\s*)?{_NUMBER}\s*$',
    re.IGNORECASE,
)


def load_source_image(
    image_bytes: bytes,
    filename: str | None = None,
    max_bytes: int | None = None,
    max_pixels: int | None = None,
) -> SourceImage:
    """
    Decode an uploaded image into a SourceImage.

    The payload is kept as a base64 data URL, the way browsers hand files
    to the mask service.

    Args:
        image_bytes: Raw file bytes (any format PIL supports)
        filename: Original file name; derived from the image format if missing
        max_bytes: Upper bound for the upload size
        max_pixels: Upper bound for width * height

    Returns:
        SourceImage with pixel dimensions and byte size filled in

    Raises:
        ValueError: If the file is too large, has too many pixels or is not a
            readable image
    """
    if max_bytes is not None and len(image_bytes) > max_bytes:
        raise ValueError(
            f'Image is too large: {len(image_bytes)} bytes (limit is {max_bytes} bytes)'
        )

    try:
        image = Image.open(io.BytesIO(image_bytes))
        if max_pixels is not None and image.width * image.height > max_pixels:
            raise ValueError(
                f'Image has too many pixels: {image.width}x{image.height} '
                f'(limit is {max_pixels} pixels)'
            )
        image.load()
    except Image.DecompressionBombError as e:
        raise ValueError(f'Image has too many pixels: {e}') from e
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f'Could not read the image: {e}') from e

    image_format = image.format or 'PNG'
    ext = FORMAT_EXTENSIONS.get(image_format, image_format.lower())
    if not filename or '.' not in filename:
        filename = f'{filename or "image"}.{ext}'

    mime = Image.MIME.get(image_format, f'image/{ext}')
    encoded = base64.b64encode(image_bytes).decode('ascii')
    width, height = image.size

    logger.debug(
        'Source image loaded: filename=%s, format=%s, size=%dx%d, bytes=%d',
        filename, image_format, width, height, len(image_bytes)
    )

    return SourceImage(
        data=f'data:{mime};base64,{encoded}',
        filename=filename,
        width=width,
        height=height,
        byte_size=len(image_bytes),
    )


def scale_point(
    x: float,
    y: float,
    display_size: tuple[int, int],
    original_size: tuple[int, int],
) -> MaskPoint:
    """Map a click on a scaled display of the image to original pixel space."""
    display_w, display_h = display_size
    original_w, original_h = original_size
    if display_w <= 0 or display_h <= 0:
        raise ValueError(f'Invalid display size {display_size}')

    scaled_x = int(x * original_w / display_w)
    scaled_y = int(y * original_h / display_h)
    # clicks on the far edge land on the last pixel
    return MaskPoint(
        x=min(max(scaled_x, 0), original_w - 1),
        y=min(max(scaled_y, 0), original_h - 1),
    )


def parse_point(text: str, image: SourceImage) -> MaskPoint:
    """
    Parse a point typed by the user.

    Accepted forms: ``120 45``, ``120,45``, ``x=120 y=45`` in original pixels,
    or ``40% 25%`` relative to the image size.

    Raises:
        ValueError: If the text is not a point or lies outside the image
    """
    match = POINT_PATTERN.match(text or '')
    if not match:
        raise ValueError(
            f'Could not read a point from {text!r}. Send it as "x y", e.g. "120 45" or "40% 25%".'
        )
    raw_x, pct_x, raw_y, pct_y = match.groups()

    if pct_x or pct_y:
        if not (pct_x and pct_y):
            raise ValueError('Use percentages for both coordinates or for neither.')
        point = scale_point(float(raw_x), float(raw_y), (100, 100), (image.width, image.height))
    else:
        point = MaskPoint(x=int(float(raw_x)), y=int(float(raw_y)))

    if not image.contains(point.x, point.y):
        raise ValueError(
            f'Point ({point.x}, {point.y}) is outside the image '
            f'({image.width}x{image.height}).'
        )
    return point


def _to_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


def render_coordinate_grid(source: SourceImage, divisions: int = GRID_DIVISIONS) -> bytes:
    """
    Draw a labelled pixel grid over the source image.

    Helps the user pick coordinates in the original pixel space.

    Returns:
        PNG bytes of the annotated image
    """
    image = Image.open(io.BytesIO(source.raw_bytes())).convert('RGB')
    draw = ImageDraw.Draw(image)
    width, height = image.size
    line_width = max(1, min(width, height) // 400)

    for i in range(1, divisions):
        x = width * i // divisions
        y = height * i // divisions
        draw.line([(x, 0), (x, height)], fill=(255, 255, 0), width=line_width)
        draw.line([(0, y), (width, y)], fill=(255, 255, 0), width=line_width)
        draw.text((x + 2, 2), str(x), fill=(255, 255, 0))
        draw.text((2, y + 2), str(y), fill=(255, 255, 0))

    result = _to_png(image)
    logger.debug('Coordinate grid rendered: divisions=%d, size=%d bytes', divisions, len(result))
    return result


def render_point_preview(source: SourceImage, point: MaskPoint) -> bytes:
    """Draw a crosshair marker at the chosen point and return PNG bytes."""
    image = Image.open(io.BytesIO(source.raw_bytes())).convert('RGB')
    draw = ImageDraw.Draw(image)
    radius = max(MARKER_RADIUS, min(image.size) // 40)
    x, y = point.x, point.y

    draw.ellipse(
        [(x - radius, y - radius), (x + radius, y + radius)],
        outline=(255, 0, 0),
        width=max(2, radius // 4),
    )
    draw.line([(x - 2 * radius, y), (x + 2 * radius, y)], fill=(255, 0, 0), width=2)
    draw.line([(x, y - 2 * radius), (x, y + 2 * radius)], fill=(255, 0, 0), width=2)
    draw.ellipse([(x - 2, y - 2), (x + 2, y + 2)], fill=(255, 0, 0))

    result = _to_png(image)
    logger.debug('Point preview rendered at (%d, %d), size=%d bytes', x, y, len(result))
    return result
