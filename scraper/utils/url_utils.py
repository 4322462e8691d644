from urllib.parse import urljoin, urlsplit, urlunsplit
import re


TRACKING_PARAMS = re.compile(r"(utm_[^=&]+|sessionid|fbclid|gclid)=[^&]*", re.IGNORECASE)


def clean_tracking_params(query: str) -> str:
    clean_query = TRACKING_PARAMS.sub("", query)
    clean_query = re.sub(r"&&+", "&", clean_query).strip("&")
    return clean_query


DEFAULT_PORTS = {"http": 80, "https": 443}


def get_origin(url: str) -> str:
    """scheme://host[:port] of an absolute URL, lower-cased; "" if there is none.

    Default ports are dropped, so "http://a:80" and "http://a" share an origin.
    """
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return ""
    try:
        port = parts.port
    except ValueError:
        return ""
    host = parts.hostname
    if not host:
        return ""

    scheme = parts.scheme.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def is_same_origin(url: str, origin: str) -> bool:
    return get_origin(url) == get_origin(origin)


def resolve_url(base_url: str, link: str) -> str:
    """Resolve a raw href against the page URL, dropping the fragment."""
    raw_link = link.strip()
    if raw_link.startswith("//"):
        # scheme-relative links inherit the page scheme
        base_scheme = urlsplit(base_url).scheme or "http"
        raw_link = f"{base_scheme}:{raw_link}"

    parts = urlsplit(urljoin(base_url, raw_link))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def strip_origin(url: str) -> str:
    """Path and query of a URL: "https://site/a/b?x=1#top" -> "/a/b?x=1"."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        return f"{path}?{parts.query}"
    return path


def absolute_url(origin: str, url: str) -> str:
    """Turn a canonical (origin-stripped) URL back into an absolute one.

    Paths are appended to the origin as they are: "//x/y" stays a path on
    the origin instead of becoming a scheme-relative link to host "x".
    """
    base = origin.rstrip("/")
    if url.startswith("/"):
        return base + url
    return urljoin(base + "/", url)
