"""Convert evaluated values into mime bundles.

Values opt into rich output through the IPython display protocol: any of
``_repr_mimebundle_``, ``_repr_html_``, ``_repr_svg_``, ``_repr_png_`` and
``_repr_jpeg_``. Each renderer runs independently; one that raises or returns
``None`` is skipped without affecting the others. ``text/plain`` is always
present.

Evaluated code can replace the whole algorithm by binding a callable to
``__mimer__`` in the session namespace. The server's own algorithm stays
reachable there as ``__default_mimer__``.
"""

from __future__ import annotations

import base64
import logging
import typing
from collections.abc import Callable, Mapping

__all__ = [
    'MimeBundle',
    'MIMER_NAME',
    'DEFAULT_MIMER_NAME',
    'SupportsMimeBundle',
    'SupportsHtml',
    'SupportsSvg',
    'SupportsPng',
    'SupportsJpeg',
    'to_mime',
    'default_mimer',
    'encode_binary',
    'plain_text',
    'as_text',
]

logger = logging.getLogger(__name__)

type MimeBundle = dict[str, str]

MIMER_NAME = '__mimer__'
DEFAULT_MIMER_NAME = '__default_mimer__'


@typing.runtime_checkable
class SupportsMimeBundle(typing.Protocol):
    def _repr_mimebundle_(self) -> Mapping[str, typing.Any] | None: ...


@typing.runtime_checkable
class SupportsHtml(typing.Protocol):
    def _repr_html_(self) -> str | None: ...


@typing.runtime_checkable
class SupportsSvg(typing.Protocol):
    def _repr_svg_(self) -> str | None: ...


@typing.runtime_checkable
class SupportsPng(typing.Protocol):
    def _repr_png_(self) -> bytes | str | None: ...


@typing.runtime_checkable
class SupportsJpeg(typing.Protocol):
    def _repr_jpeg_(self) -> bytes | str | None: ...


# Single-type renderers, in merge order
_RENDERERS: tuple[tuple[type, str, Callable[[typing.Any], typing.Any]], ...] = (
    (SupportsHtml, 'text/html', lambda value: value._repr_html_()),
    (SupportsSvg, 'image/svg+xml', lambda value: value._repr_svg_()),
    (SupportsPng, 'image/png', lambda value: value._repr_png_()),
    (SupportsJpeg, 'image/jpeg', lambda value: value._repr_jpeg_()),
)


def to_mime(value: typing.Any, namespace: Mapping[str, typing.Any] | None = None) -> MimeBundle:
    """Resolve ``value`` into a mime bundle. Never raises.

    Args:
        value: Evaluated value
        namespace: Session namespace, checked for a ``__mimer__`` override
    """
    mimer = namespace.get(MIMER_NAME) if namespace is not None else None
    if callable(mimer) and mimer is not default_mimer:
        try:
            bundle = mimer(value)
        except Exception as e:
            logger.warning(f'Custom mimer failed, using default: {type(e).__name__}: {e}')
        else:
            if isinstance(bundle, Mapping):
                return {str(key): as_text(content) for key, content in bundle.items()}
            logger.warning(f'Custom mimer returned {type(bundle).__name__}, using default')

    return default_mimer(value)


def default_mimer(value: typing.Any) -> MimeBundle:
    """Default resolution: display-protocol renderers merged, ``text/plain`` last."""
    if value is None:
        return {'text/plain': 'None'}

    bundle: MimeBundle = {}

    if isinstance(value, SupportsMimeBundle):
        try:
            rendered = value._repr_mimebundle_()
        except Exception as e:
            logger.debug(f'_repr_mimebundle_ failed: {e}')
        else:
            if isinstance(rendered, tuple) and len(rendered) == 2:
                rendered = rendered[0]  # (data, metadata)
            if isinstance(rendered, Mapping):
                bundle.update({str(key): as_text(content) for key, content in rendered.items()})

    for protocol, mime_type, render in _RENDERERS:
        if mime_type in bundle or not isinstance(value, protocol):
            continue
        try:
            content = render(value)
        except Exception as e:
            logger.debug(f'{mime_type} renderer failed: {e}')
            continue
        if content is not None:
            bundle[mime_type] = as_text(content)

    if 'text/plain' not in bundle:
        bundle['text/plain'] = plain_text(value)

    return bundle


def plain_text(value: typing.Any) -> str:
    """Generic textual rendering: ``repr``, falling back to the default object repr."""
    try:
        return repr(value)
    except Exception:
        return object.__repr__(value)


def encode_binary(content: bytes) -> str:
    """Base64-encode binary image data for JSON transport."""
    return base64.b64encode(content).decode('ascii')


def as_text(content: typing.Any) -> str:
    if isinstance(content, (bytes, bytearray)):
        return encode_binary(bytes(content))
    if isinstance(content, str):
        return content
    return plain_text(content)
