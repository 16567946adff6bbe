"""Fetch tool: retrieve a web page or API response as markdown, text, or raw body."""

import html
import html.parser
import ipaddress
import logging
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

logger = logging.getLogger(__name__)

MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB, same cap as the other tools
MAX_REDIRECTS = 10
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 120
FORMATS = ("markdown", "text", "raw")
METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; tandem)",
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXT_MIMES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/ecmascript",
        "application/rss+xml",
        "application/atom+xml",
    }
)
_HTML_MIMES = frozenset({"text/html", "application/xhtml+xml"})

# Block elements that should produce line breaks in text extraction
_BLOCK_TAGS = frozenset(
    {
        "p",
        "div",
        "br",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "li",
        "tr",
        "blockquote",
        "pre",
        "hr",
        "section",
        "article",
        "header",
        "footer",
        "nav",
        "main",
        "table",
    }
)

_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


class _TextExtractor(html.parser.HTMLParser):
    """Collect readable text, dropping script/style/noscript/svg content."""

    def __init__(self):
        super().__init__()
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_endtag(self, tag: str):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_data(self, data: str):
        if self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r" ?\n ?", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_text(body: str) -> str:
    parser = _TextExtractor()
    parser.feed(body)
    parser.close()
    return parser.get_text()


def check_url_safety(url: str) -> str | None:
    """Return an error string if the URL has a bad scheme or targets a private address."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"error: url scheme {parsed.scheme!r} is not allowed, must be http or https"
    hostname = parsed.hostname
    if not hostname:
        return "error: could not parse hostname from url"
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        return f"error: could not resolve hostname {hostname!r}: {e}"
    for _, _, _, _, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return f"error: url resolves to private/internal address ({addr}), blocked"
    return None


def _decode(data: bytes, content_type: str) -> str:
    charset = None
    for part in content_type.split(";"):
        part = part.strip()
        if part.lower().startswith("charset="):
            charset = part.split("=", 1)[1].strip().strip("\"'")
            break
    for encoding in (charset, "utf-8"):
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _to_markdown(body: str) -> str:
    from html_to_markdown import convert

    return convert(body)


def _truncate(output: str) -> str:
    encoded = output.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return output
    head = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return head + f"\n[content truncated at 50KB, total was {len(encoded)} bytes]"


def fetch_url(
    url: str,
    *,
    format: str = "markdown",
    method: str = "GET",
    headers: dict | None = None,
    data: str | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> str:
    """Fetch ``url`` and return its body, converted according to ``format``.

    HTML bodies are converted to markdown or plain text; other textual
    bodies (JSON, plain text, XML) are returned as received. Returns an
    ``error: ...`` string on failure, never raises for network problems.
    """
    if format not in FORMATS:
        return f"error: invalid format {format!r}, must be one of {', '.join(FORMATS)}"
    if not url:
        return "error: url must be a non-empty string"
    method = (method or "GET").upper()
    if method not in METHODS:
        return f"error: unsupported method {method!r}"
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))

    request_headers = dict(HEADERS)
    for key, value in (headers or {}).items():
        request_headers[str(key)] = str(value)
    body_bytes = data.encode("utf-8") if data else None

    current_url = url
    opener = urllib.request.build_opener(_NoRedirectHandler)
    for _ in range(MAX_REDIRECTS + 1):
        err = check_url_safety(current_url)
        if err:
            return err
        req = urllib.request.Request(
            current_url, data=body_bytes, headers=request_headers, method=method
        )
        try:
            resp = opener.open(req, timeout=timeout)
            break
        except _RedirectError as r:
            current_url = urllib.parse.urljoin(current_url, r.url)
            # 301/302/303 are followed with a GET; 307/308 keep the method.
            if r.code in (301, 302, 303):
                method, body_bytes = "GET", None
            logger.debug("Redirect %d to %s", r.code, current_url)
        except urllib.error.HTTPError as e:
            return f"error: HTTP {e.code} {e.reason}"
        except urllib.error.URLError as e:
            reason = str(e.reason)
            if "timed out" in reason.lower():
                return f"error: request timed out after {timeout} seconds"
            host = urllib.parse.urlparse(current_url).hostname
            return f"error: could not connect to {host}: {reason}"
        except TimeoutError:
            return f"error: request timed out after {timeout} seconds"
        except OSError as e:
            host = urllib.parse.urlparse(current_url).hostname
            return f"error: could not connect to {host}: {e}"
    else:
        return f"error: too many redirects (limit is {MAX_REDIRECTS})"

    try:
        content_type = resp.headers.get("Content-Type", "") or ""
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
            return f"error: binary content (content-type: {mime}), cannot display as text"
        try:
            raw = resp.read(MAX_RESPONSE_SIZE + 1)
        except TimeoutError:
            return f"error: request timed out after {timeout} seconds"
        except OSError as e:
            return f"error: failed to read response: {e}"
        if len(raw) > MAX_RESPONSE_SIZE:
            return "error: response too large (limit is 5MB)"
        if b"\x00" in raw[:8192]:
            return "error: binary content detected, cannot display as text"
        body = _decode(raw, content_type)
    finally:
        resp.close()

    if format == "raw" or mime not in _HTML_MIMES:
        output = body
    elif format == "text":
        output = html_to_text(body)
    else:
        try:
            output = _to_markdown(body)
        except Exception as e:
            return f"error: failed to convert HTML to markdown: {e}"

    if not output.strip():
        return "(empty response)"
    return _truncate(output)
