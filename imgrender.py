"""Letterbox an image to a fixed aspect ratio over a blurred, flat or gradient
background.

The source image is scaled to fit inside a canvas as wide as the source and
``width * aspect_value`` tall, centered, and drawn over a background chosen by
a modifier:

* ``Blur(radius)`` - the whole source, Gaussian-blurred and stretched to the
  canvas.
* ``Color(color)`` - a flat fill.
* ``Gradient(colors)`` - a vertical linear gradient, first color at the top.

Examples:
  imgrender photo.jpg --aspect 9:16 --blur 4
  imgrender photo.jpg out.png --aspect 4:3 --color "#101018"
  imgrender photo.jpg --gradient red,blue --gallery ~/Pictures/renders
"""

from __future__ import annotations

import argparse
import enum
import logging
import math
import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Final, Sequence, Union

from PIL import Image, ImageColor, ImageFilter, ImageOps

ColorSpec = Union[str, tuple[int, int, int], tuple[int, int, int, int]]
RGBA = tuple[int, int, int, int]

# Empirical strength multiplier applied on top of the resize compensation.
BLUR_INTENSITY: Final = 7
CANVAS_MODE: Final = "RGBA"
GALLERY_ENV: Final = "IMGRENDER_GALLERY"
_FLATTEN_SUFFIXES: Final = {".jpg", ".jpeg"}


class RenderError(RuntimeError):
    """Base class for rendering and persistence failures."""


class RenderFailed(RenderError):
    """The canvas could not be composed into an image."""


class SaveFailed(RenderError):
    """The rendered image could not be written."""


class ResizeFailed(RenderError):
    """Reserved for resize failures; not raised by ``compose``."""


class AspectRatio(enum.Enum):
    NINE_SIXTEEN = "9:16"
    SIXTEEN_NINE = "16:9"
    FOUR_THREE = "4:3"

    @property
    def aspect_value(self) -> float:
        """Canvas height divided by canvas width."""

        return _ASPECT_VALUES[self]

    @property
    def tag(self) -> str:
        return self.value.replace(":", "x")

    @classmethod
    def parse(cls, value: str) -> AspectRatio:
        text = value.strip().lower().replace("x", ":")
        for member in cls:
            if member.value == text:
                return member
        choices = ", ".join(member.value for member in cls)
        raise ValueError(f"unknown aspect ratio {value!r}; expected one of {choices}")


_ASPECT_VALUES: Final = {
    AspectRatio.NINE_SIXTEEN: 9 / 16,
    AspectRatio.SIXTEEN_NINE: 16 / 9,
    AspectRatio.FOUR_THREE: 3 / 4,
}


def to_rgba(color: ColorSpec) -> RGBA:
    """Resolve a Pillow color spec into an opaque-by-default RGBA tuple."""

    if isinstance(color, str):
        resolved = ImageColor.getcolor(color, CANVAS_MODE)
    else:
        resolved = tuple(color)
    if len(resolved) == 3:
        resolved = (*resolved, 255)
    if len(resolved) != 4 or not all(0 <= int(c) <= 255 for c in resolved):
        raise ValueError(f"invalid color: {color!r}")
    r, g, b, a = (int(c) for c in resolved)
    return (r, g, b, a)


@dataclass(frozen=True)
class Blur:
    radius: float

    def __post_init__(self) -> None:
        if not math.isfinite(self.radius):
            raise ValueError("blur radius must be finite")
        if self.radius < 0:
            raise ValueError("blur radius must be non-negative")


@dataclass(frozen=True)
class Color:
    color: ColorSpec

    def __post_init__(self) -> None:
        to_rgba(self.color)


@dataclass(frozen=True)
class Gradient:
    """Vertical gradient stops; locations default to an even spread."""

    colors: tuple[ColorSpec, ...]
    locations: tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "colors", tuple(self.colors))
        if not self.colors:
            raise ValueError("gradient needs at least one color")
        for color in self.colors:
            to_rgba(color)
        if self.locations is None:
            return
        locations = tuple(float(loc) for loc in self.locations)
        object.__setattr__(self, "locations", locations)
        if len(locations) != len(self.colors):
            raise ValueError("gradient locations must match colors one to one")
        if any(loc < 0 or loc > 1 for loc in locations):
            raise ValueError("gradient locations must lie within [0, 1]")
        if any(b < a for a, b in zip(locations, locations[1:])):
            raise ValueError("gradient locations must be non-decreasing")

    def stops(self) -> list[tuple[float, RGBA]]:
        colors = [to_rgba(color) for color in self.colors]
        if self.locations is not None:
            return list(zip(self.locations, colors))
        if len(colors) == 1:
            return [(0.0, colors[0])]
        last = len(colors) - 1
        return [(index / last, color) for index, color in enumerate(colors)]


Modifier = Union[Blur, Color, Gradient]


@dataclass(frozen=True)
class Layout:
    target_width: int
    target_height: int
    draw_width: int
    draw_height: int
    offset_x: int
    offset_y: int
    scale: float


def compute_layout(width: int, height: int, aspect_value: float) -> Layout:
    """Return the canvas size and contain-fit placement of the source."""

    if width <= 0 or height <= 0:
        raise RenderFailed(f"source has no area: {width}x{height}")

    target_width = width
    target_height = round(width * aspect_value)
    if target_height <= 0:
        raise RenderFailed(
            f"canvas has no area: {target_width}x{target_height} "
            f"(aspect value {aspect_value})"
        )

    scale = min(target_width / width, target_height / height)
    draw_width = max(1, min(target_width, round(width * scale)))
    draw_height = max(1, min(target_height, round(height * scale)))
    return Layout(
        target_width=target_width,
        target_height=target_height,
        draw_width=draw_width,
        draw_height=draw_height,
        offset_x=(target_width - draw_width) // 2,
        offset_y=(target_height - draw_height) // 2,
        scale=scale,
    )


def adjusted_blur_radius(
    original_width: float, target_width: float, radius: float
) -> float:
    """Scale *radius* for the resize from *original_width* to *target_width*."""

    scale_factor = target_width / original_width
    return (radius / scale_factor) * BLUR_INTENSITY


def _gradient_rows(height: int, stops: Sequence[tuple[float, RGBA]]) -> list[RGBA]:
    if len(stops) == 1 or height == 1:
        return [stops[0][1]] * height

    rows: list[RGBA] = []
    for y in range(height):
        t = y / (height - 1)
        if t <= stops[0][0]:
            rows.append(stops[0][1])
            continue
        if t >= stops[-1][0]:
            rows.append(stops[-1][1])
            continue
        for (start, lo), (end, hi) in zip(stops, stops[1:]):
            if start <= t <= end:
                span = end - start
                mix = (t - start) / span if span else 1.0
                r, g, b, a = (
                    round(c0 + (c1 - c0) * mix) for c0, c1 in zip(lo, hi)
                )
                rows.append((r, g, b, a))
                break
    return rows


class Canvas:
    """Off-screen RGBA buffer used to compose a single render."""

    def __init__(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise RenderFailed(f"cannot allocate a {width}x{height} canvas")
        try:
            self._image: Image.Image | None = Image.new(
                CANVAS_MODE, (width, height), (0, 0, 0, 0)
            )
        except (MemoryError, ValueError) as exc:
            raise RenderFailed(f"cannot allocate a {width}x{height} canvas") from exc
        self.size = (width, height)

    def _buffer(self) -> Image.Image:
        if self._image is None:
            raise RenderFailed("canvas already finalized")
        return self._image

    def fill(self, color: ColorSpec) -> None:
        self._buffer().paste(to_rgba(color), (0, 0, *self.size))

    def fill_gradient(self, stops: Sequence[tuple[float, RGBA]]) -> None:
        width, height = self.size
        column = Image.new(CANVAS_MODE, (1, height))
        column.putdata(_gradient_rows(height, stops))
        self._buffer().paste(column.resize((width, height), Image.NEAREST))

    def draw(self, image: Image.Image, box: tuple[int, int, int, int]) -> None:
        """Draw *image* scaled into *box* (left, top, width, height)."""

        left, top, width, height = box
        layer = image if image.mode == CANVAS_MODE else image.convert(CANVAS_MODE)
        if layer.size != (width, height):
            layer = layer.resize((width, height), Image.LANCZOS)
        self._buffer().alpha_composite(layer, (left, top))

    def finalize(self) -> Image.Image:
        image = self._buffer()
        self._image = None
        return image


def paint_background(
    canvas: Canvas, modifier: Modifier, original: Image.Image
) -> None:
    width, height = canvas.size
    if isinstance(modifier, Blur):
        radius = adjusted_blur_radius(original.width, width, modifier.radius)
        # Pillow crashes on huge radii; past the image extent the blur is saturated.
        radius = min(radius, max(original.size))
        logging.debug("blur radius %s adjusted to %s", modifier.radius, radius)
        blurred = original.convert(CANVAS_MODE).filter(
            ImageFilter.GaussianBlur(radius)
        )
        canvas.draw(blurred, (0, 0, width, height))
    elif isinstance(modifier, Color):
        canvas.fill(modifier.color)
    elif isinstance(modifier, Gradient):
        canvas.fill_gradient(modifier.stops())
    else:
        raise TypeError(f"unsupported modifier: {modifier!r}")


def compose(
    original: Image.Image, modifier: Modifier, target_aspect: AspectRatio
) -> Image.Image:
    """Return *original* letterboxed to *target_aspect* over *modifier*."""

    layout = compute_layout(*original.size, target_aspect.aspect_value)
    logging.debug(
        "compose %sx%s -> %sx%s, draw %sx%s at (%s, %s)",
        original.width,
        original.height,
        layout.target_width,
        layout.target_height,
        layout.draw_width,
        layout.draw_height,
        layout.offset_x,
        layout.offset_y,
    )

    canvas = Canvas(layout.target_width, layout.target_height)
    try:
        paint_background(canvas, modifier, original)
        canvas.draw(
            original,
            (layout.offset_x, layout.offset_y, layout.draw_width, layout.draw_height),
        )
    except (OSError, ValueError, MemoryError) as exc:
        raise RenderFailed(f"drawing failed: {exc}") from exc
    return canvas.finalize()


def save_image(image: Image.Image, path: Path) -> Path:
    """Write *image* to *path*, flattening alpha for JPEG targets."""

    if path.suffix.lower() in _FLATTEN_SUFFIXES and image.mode in {"RGBA", "LA"}:
        image = image.convert("RGB")
    try:
        image.save(path, quality=95)
    except (OSError, ValueError) as exc:
        raise SaveFailed(f"failed to save {path}: {exc}") from exc
    logging.info("saved %s", path)
    return path


def reserve_gallery_file(
    directory: Path, now: datetime | None = None
) -> tuple[Path, BinaryIO]:
    """Create and open a fresh ``render_<timestamp>.png`` inside *directory*."""

    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S_%f")
    counter = 0
    while True:
        suffix = f"_{counter}" if counter else ""
        candidate = directory / f"render_{stamp}{suffix}.png"
        try:
            return candidate, open(candidate, "xb")
        except FileExistsError:
            counter += 1


def save_to_gallery(image: Image.Image, directory: Path) -> Path:
    """Save *image* unchanged under a fresh name inside *directory*."""

    try:
        directory.mkdir(parents=True, exist_ok=True)
        path, handle = reserve_gallery_file(directory)
    except OSError as exc:
        raise SaveFailed(f"cannot use gallery {directory}: {exc}") from exc
    try:
        with handle:
            image.save(handle, format="PNG")
    except (OSError, ValueError) as exc:
        path.unlink(missing_ok=True)
        raise SaveFailed(f"failed to save {path}: {exc}") from exc
    logging.info("saved %s", path)
    return path


class ImageRenderer:
    """Serializes renders and saves so only one runs per instance at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def render(
        self, modifier: Modifier, aspect: AspectRatio, image: Image.Image
    ) -> Image.Image:
        with self._lock:
            return compose(image, modifier, aspect)

    def render_and_save(
        self,
        modifier: Modifier,
        aspect: AspectRatio,
        image: Image.Image,
        gallery: Path,
    ) -> Path:
        with self._lock:
            rendered = compose(image, modifier, aspect)
            return save_to_gallery(rendered, gallery)

    def save(self, image: Image.Image, gallery: Path) -> Path:
        with self._lock:
            return save_to_gallery(image, gallery)


def parse_gradient(value: str) -> Gradient:
    colors = [part.strip() for part in value.split(",") if part.strip()]
    return Gradient(tuple(colors))


def resolve_output_path(
    input_path: Path, supplied_output: str | None, aspect: AspectRatio
) -> Path:
    if supplied_output:
        return Path(supplied_output)
    return input_path.with_name(f"{input_path.stem}_{aspect.tag}.png")


def _modifier_from_args(args: argparse.Namespace) -> Modifier:
    if args.blur is not None:
        return Blur(args.blur)
    if args.color is not None:
        return Color(args.color)
    return parse_gradient(args.gradient)


def run_cli(argv: list[str] | None = None) -> Path:
    parser = argparse.ArgumentParser(
        description="Letterbox an image to an aspect ratio over a blurred, "
        "flat or gradient background."
    )
    parser.add_argument("input", help="Path to input image")
    parser.add_argument(
        "output",
        nargs="?",
        help="Optional output path; defaults to <stem>_<aspect>.png",
    )
    parser.add_argument(
        "--aspect",
        type=AspectRatio.parse,
        default=AspectRatio.NINE_SIXTEEN.value,
        help="Target aspect ratio: 9:16, 16:9 or 4:3 (W:H or WxH). Default: 9:16",
    )
    background = parser.add_mutually_exclusive_group(required=True)
    background.add_argument(
        "--blur", type=float, help="Blur the source behind itself by RADIUS."
    )
    background.add_argument(
        "--color", help="Fill the background with a color (name, #hex)."
    )
    background.add_argument(
        "--gradient", help="Comma-separated gradient colors, top to bottom."
    )
    parser.add_argument(
        "--gallery",
        help="Save into this directory instead of OUTPUT; "
        f"falls back to {GALLERY_ENV} when OUTPUT is not given.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )

    args = parser.parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    if args.gallery and args.output:
        parser.error("--gallery and OUTPUT are mutually exclusive")
    gallery = args.gallery or os.getenv(GALLERY_ENV)

    aspect = args.aspect
    try:
        modifier = _modifier_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    image_path = Path(args.input)
    try:
        with Image.open(image_path) as opened:
            image = ImageOps.exif_transpose(opened)
            image.load()
    except OSError as exc:
        logging.error("cannot read %s: %s", image_path, exc)
        raise SystemExit(1) from exc

    renderer = ImageRenderer()
    try:
        if gallery and not args.output:
            output_path = renderer.render_and_save(
                modifier, aspect, image, Path(gallery).expanduser()
            )
        else:
            rendered = renderer.render(modifier, aspect, image)
            output_path = save_image(
                rendered, resolve_output_path(image_path, args.output, aspect)
            )
    except RenderError as exc:
        logging.error("%s", exc)
        raise SystemExit(1) from exc

    print(output_path)
    return output_path


def main() -> None:
    run_cli()


if __name__ == "__main__":  # pragma: no cover - entrypoint
    main()
