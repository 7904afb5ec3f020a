# core/proxy/upstream_urls.py
"""Building and validating upstream URLs"""

import re
import logging
from typing import Iterable, Tuple
from urllib.parse import urljoin, urlsplit, urlencode

from yarl import URL

from core.errors import UnsafeTargetError

logger = logging.getLogger(__name__)

_API_SEGMENT = re.compile(r'/api\b')
_ABSOLUTE_URL = re.compile(r'^https?://', re.IGNORECASE)
_ESCAPED_DOT = re.compile(r'%2e', re.IGNORECASE)
_AUTH_SUFFIXES = (
    re.compile(r'/api/auth$', re.IGNORECASE),
    re.compile(r'/auth$', re.IGNORECASE),
    re.compile(r'/api$', re.IGNORECASE),
)

LETTER_OF_GUARANTEE_TERM = 'letterOfGuarantee'
LETTER_OF_GUARANTEE_FIELD = 'type'


def ensure_company_gateway_path(raw: str) -> str:
    """
    Normalize a gateway base URL so that it ends with an /api segment.

    Bases that already contain /api are kept as-is (minus trailing slashes).
    """
    trimmed = raw.strip().rstrip('/')
    if not trimmed:
        return trimmed

    if _API_SEGMENT.search(trimmed):
        return trimmed

    return f"{trimmed}/api"


def build_base_api_url(base_root: str, path: str, query: str = "") -> str:
    """
    Join a resource path onto the base API root.

    Args:
        base_root: Result of ensure_company_gateway_path()
        path: Resource path, already URL-encoded (e.g. "cblrequests/12")
        query: Raw query string without the leading "?"

    Returns:
        str: Absolute upstream URL
    """
    normalized = path[1:] if path.startswith('/') else path
    url = f"{base_root.rstrip('/')}/{normalized}"
    if query:
        url = f"{url}?{query}"
    return url


def url_origin(value: str) -> str:
    """scheme://host[:port] of an absolute URL, '' if there is none"""
    parts = urlsplit(value.strip())
    if parts.scheme not in ('http', 'https') or not parts.netloc:
        return ''
    return f"{parts.scheme}://{parts.netloc}".lower()


def canonical_url(value: str) -> URL:
    """
    Parse an absolute http(s) URL the way it will be sent: dot-segments are
    resolved and escaped unreserved characters (%2e) decoded.

    Raises:
        UnsafeTargetError: not an absolute http(s) URL
    """
    # %2e is an unreserved escape: it names the same segment as "."
    unescaped = _ESCAPED_DOT.sub('.', value.strip())
    try:
        url = URL(unescaped)
    except (TypeError, ValueError) as e:
        raise UnsafeTargetError("Invalid URL") from e

    if url.scheme not in ('http', 'https') or not url.host:
        raise UnsafeTargetError("Invalid URL")
    return url


def same_origin(a: URL, b: URL) -> bool:
    return (a.scheme, a.host, a.port) == (b.scheme, b.host, b.port)


def is_under(candidate: URL, root: URL) -> bool:
    """True if candidate is root itself or lies below root's path"""
    if not same_origin(candidate, root):
        return False
    prefix = root.raw_path.rstrip('/')
    return candidate.raw_path == prefix or candidate.raw_path.startswith(f"{prefix}/")


def normalize_auth_root(auth_api: str) -> str:
    """
    Root URL under which the auth service exposes static assets (QR codes).

    "https://h/compauthapi/api/auth" -> "https://h/compauthapi/"
    """
    parts = urlsplit(auth_api.strip())
    path = parts.path.rstrip('/')

    for pattern in _AUTH_SUFFIXES:
        stripped = pattern.sub('', path)
        if stripped != path:
            path = stripped
            break

    root_path = path or '/'
    if not root_path.endswith('/'):
        root_path = f"{root_path}/"

    return f"{parts.scheme}://{parts.netloc}{root_path}"


def resolve_auth_asset_url(auth_root: str, raw_path: str) -> str:
    """
    Resolve a QR/asset path returned by the auth service.

    Raises:
        UnsafeTargetError: empty path, or a URL that resolves outside of auth_root
    """
    if not raw_path:
        raise UnsafeTargetError("Path is required")

    trimmed = raw_path.strip()
    root = canonical_url(auth_root)

    if _ABSOLUTE_URL.match(trimmed):
        candidate = canonical_url(trimmed)
    else:
        candidate = canonical_url(urljoin(str(root), trimmed.lstrip('/')))

    if not is_under(candidate, root):
        raise UnsafeTargetError("URL outside of auth root")

    return str(candidate)


def resolve_image_target(image_base: str, raw_path: str) -> str:
    """
    Resolve a document/image path against the configured image base.

    Absolute URLs must share the base origin and path prefix; relative paths
    are joined onto the base and must not escape it. Checks run on the
    canonical URL (dot-segments resolved, %2e decoded), which is also the URL
    that gets fetched.

    Raises:
        UnsafeTargetError: with the reason as message
    """
    base = canonical_url(image_base if image_base.endswith('/') else f"{image_base}/")
    base_path_no_leading = base.raw_path.strip('/')

    trimmed = re.sub(r'\\+', '/', raw_path).strip()
    if not trimmed:
        raise UnsafeTargetError("Empty path")

    if _ABSOLUTE_URL.match(trimmed):
        candidate = canonical_url(trimmed)
        if not same_origin(candidate, base):
            raise UnsafeTargetError("Origin not allowed")
        if not is_under(candidate, base):
            raise UnsafeTargetError("Path not allowed")
        return str(candidate)

    relative = trimmed.lstrip('/')
    if base_path_no_leading and relative.startswith(base_path_no_leading):
        relative = relative[len(base_path_no_leading):].lstrip('/')

    candidate = canonical_url(urljoin(str(base), relative))
    if not is_under(candidate, base):
        raise UnsafeTargetError("Resolved URL outside of allowed base")

    logger.debug(f"Image target resolved: {raw_path} -> {candidate}")
    return str(candidate)


def filter_letter_of_guarantee_query(items: Iterable[Tuple[str, str]]) -> str:
    """
    Rewrite a credit-facility listing query so it only returns letters of guarantee.

    Caller-supplied searchTerm/searchBy values are kept, after the forced pair.
    """
    items = list(items)
    params = [(k, v) for k, v in items if k not in ('searchTerm', 'searchBy')]

    params.append(('searchTerm', LETTER_OF_GUARANTEE_TERM))
    params.append(('searchBy', LETTER_OF_GUARANTEE_FIELD))

    params.extend(
        ('searchTerm', v) for k, v in items
        if k == 'searchTerm' and v and v != LETTER_OF_GUARANTEE_TERM
    )
    params.extend(
        ('searchBy', v) for k, v in items
        if k == 'searchBy' and v and v != LETTER_OF_GUARANTEE_FIELD
    )

    return urlencode(params)
