from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from typing import Final
from urllib.parse import urlsplit

import httpx
import torch
from PIL import Image, ImageFile, ImageOps, UnidentifiedImageError

from .errors import PreprocessError, PreprocessErrorKind
from .inference.types import PreprocessOutput
from .logging import get_logger

ImageFile.LOAD_TRUNCATED_IMAGES = False

_PREPROCESS_SIGNATURE: Final[str] = "v2/exif+rgb_on_white+bilinear{size}+scale255+chw+imagenet_norm"
_DECODE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    ValueError,
    SyntaxError,
)
_BLOCKED_STATUSES: Final[frozenset[int]] = frozenset({401, 403})

ImageSource = bytes | bytearray | str


@dataclass(frozen=True)
class PreprocessOptions:
    target_size: int = 224
    max_bytes: int = 10 * 1024 * 1024
    max_side_px: int = 8192
    fetch_timeout_seconds: float = 10.0
    allowed_origins: tuple[str, ...] = ()


def preprocess(
    source: ImageSource,
    opts: PreprocessOptions,
    client: httpx.Client | None = None,
) -> PreprocessOutput:
    """Turn raw bytes, a data URI or an image URL into a model-ready tensor."""
    raw = load_source_bytes(source, opts, client)
    img = decode_image(raw, opts)
    try:
        return run_preprocess(img, opts.target_size)
    finally:
        img.close()


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def load_source_bytes(
    source: ImageSource, opts: PreprocessOptions, client: httpx.Client | None = None
) -> bytes:
    if isinstance(source, bytes | bytearray):
        return bytes(source)
    text = source.strip()
    low = text[:16].lower()
    if low.startswith("data:"):
        return _decode_data_uri(text)
    if low.startswith("http://") or low.startswith("https://"):
        return fetch_image_bytes(text, opts, client)
    if "://" in low:
        raise PreprocessError(
            PreprocessErrorKind.cross_origin_blocked, f"scheme not allowed: {urlsplit(text).scheme}"
        )
    raise PreprocessError(PreprocessErrorKind.decode_failed, "unsupported image source")


def fetch_image_bytes(
    url: str, opts: PreprocessOptions, client: httpx.Client | None = None
) -> bytes:
    if not _origin_allowed(url, opts.allowed_origins):
        raise PreprocessError(PreprocessErrorKind.cross_origin_blocked, "origin not allowed")
    own_client = client is None
    http = client if client is not None else httpx.Client(follow_redirects=True)
    try:
        with http.stream("GET", url, timeout=opts.fetch_timeout_seconds) as resp:
            _check_fetch_response(resp, opts)
            return _read_limited(resp, opts.max_bytes)
    except httpx.HTTPError as exc:
        get_logger().info("image_fetch_failed error=%s", type(exc).__name__)
        raise PreprocessError(PreprocessErrorKind.fetch_failed, str(exc) or "fetch failed") from None
    finally:
        if own_client:
            http.close()


def _check_fetch_response(resp: httpx.Response, opts: PreprocessOptions) -> None:
    # Redirects may land on a different origin
    if not _origin_allowed(str(resp.url), opts.allowed_origins):
        raise PreprocessError(
            PreprocessErrorKind.cross_origin_blocked, "redirected origin not allowed"
        )
    if resp.status_code in _BLOCKED_STATUSES:
        raise PreprocessError(
            PreprocessErrorKind.cross_origin_blocked, f"image host refused access ({resp.status_code})"
        )
    if resp.status_code >= 400:
        raise PreprocessError(
            PreprocessErrorKind.fetch_failed, f"image host returned {resp.status_code}"
        )
    declared = resp.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > opts.max_bytes:
        raise PreprocessError(PreprocessErrorKind.decode_failed, "image exceeds size limit")


def _read_limited(resp: httpx.Response, max_bytes: int) -> bytes:
    buf = bytearray()
    for chunk in resp.iter_bytes():
        buf.extend(chunk)
        if len(buf) > max_bytes:
            raise PreprocessError(PreprocessErrorKind.decode_failed, "image exceeds size limit")
    return bytes(buf)


def decode_image(raw: bytes, opts: PreprocessOptions) -> Image.Image:
    if not raw:
        raise PreprocessError(PreprocessErrorKind.decode_failed, "empty image data")
    if len(raw) > opts.max_bytes:
        raise PreprocessError(PreprocessErrorKind.decode_failed, "image exceeds size limit")
    try:
        img = Image.open(io.BytesIO(raw))
        w, h = img.size
        if max(w, h) > opts.max_side_px:
            raise PreprocessError(PreprocessErrorKind.decode_failed, "image dimensions too large")
        img.load()
    except PreprocessError:
        raise
    except Image.DecompressionBombError:
        raise PreprocessError(
            PreprocessErrorKind.decode_failed, "decompression bomb triggered"
        ) from None
    except _DECODE_ERRORS as exc:
        raise PreprocessError(
            PreprocessErrorKind.decode_failed, f"failed to decode image: {type(exc).__name__}"
        ) from None
    return img


def run_preprocess(img: Image.Image, target_size: int) -> PreprocessOutput:
    if target_size < 1:
        raise ValueError("target_size must be positive")
    try:
        rgb = _load_to_rgb(img)
        if rgb.size != (target_size, target_size):
            rgb = rgb.resize((target_size, target_size), resample=Image.Resampling.BILINEAR)
        buf = bytearray(rgb.tobytes())
    except PreprocessError:
        raise
    except (ValueError, OSError) as exc:
        raise PreprocessError(PreprocessErrorKind.decode_failed, str(exc)) from None

    # HWC uint8 -> 1x3xHxW float32 in [0, 1]
    t = (
        torch.frombuffer(buf, dtype=torch.uint8)
        .reshape(target_size, target_size, 3)
        .permute(2, 0, 1)
        .to(dtype=torch.float32)
        .div_(255.0)
        .unsqueeze(0)
        .contiguous()
    )
    return PreprocessOutput(tensor=t, source_size=(img.size[0], img.size[1]))


def _load_to_rgb(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise PreprocessError(PreprocessErrorKind.decode_failed, "EXIF transpose failed")
    out: Image.Image = tmp
    if out.mode == "P":
        out = out.convert("RGBA")
    if out.mode in ("RGBA", "LA"):
        rgba = out.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        out = Image.alpha_composite(bg, rgba)
    if out.mode != "RGB":
        out = out.convert("RGB")
    return out


def _decode_data_uri(uri: str) -> bytes:
    header, sep, payload = uri.partition(",")
    if not sep:
        raise PreprocessError(PreprocessErrorKind.decode_failed, "malformed data URI")
    if not header.lower().endswith(";base64"):
        raise PreprocessError(PreprocessErrorKind.decode_failed, "data URI must be base64")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise PreprocessError(PreprocessErrorKind.decode_failed, "invalid base64 payload") from None


def _origin_allowed(url: str, allowed: tuple[str, ...]) -> bool:
    if not allowed:
        return True
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    origin = f"{parts.scheme.lower()}://{host}"
    for entry in allowed:
        e = entry.strip().lower().rstrip("/")
        if e == host or e == origin:
            return True
        if e.startswith("*.") and host.endswith(e[1:]):
            return True
    return False
