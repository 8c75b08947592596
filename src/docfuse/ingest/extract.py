"""Text extraction for file and URL sources.

Files: plain text formats are read as UTF-8; PDFs go through pypdf page by
page (pages without a text layer are skipped).

URLs, with SSRF protection applied before any connection is made:
- Allowed URL schemes: https:// and http:// only.
- Hostname resolved; private/loopback/link-local/reserved ranges blocked.
- Content-Type whitelist: text/html and text/plain only.
- Max response body: 5 MB. Timeout: 30 seconds. Max redirects: 3.
- HTML: script/style/nav/footer/head stripped, then html2text.
"""

from __future__ import annotations

import ipaddress
import mimetypes
import re
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from http.client import HTTPResponse
from pathlib import Path

import html2text
import pypdf
from bs4 import BeautifulSoup
from pypdf.errors import PdfReadError

from docfuse.errors import ExternalServiceError, ValidationError
from docfuse.lifecycle import validate_url

_USER_AGENT = "docfuse/0.1"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_CONTENT_TYPES = {"text/html", "text/plain"}

_TEXT_EXTS = {".txt", ".text", ".md", ".markdown", ".rst", ".csv", ".log"}
_PDF_EXTS = {".pdf"}
SUPPORTED_EXTENSIONS = _TEXT_EXTS | _PDF_EXTS

_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


class SsrfError(ValidationError):
    """Raised when a URL resolves to a private or reserved address."""


@dataclass
class ExtractedFile:
    text: str
    file_name: str
    file_size: int
    mime_type: str


def normalize_text(text: str) -> str:
    """Unify line endings, drop trailing spaces, and collapse long blank runs."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------


def extract_file(path: Path | str) -> ExtractedFile:
    """Read the text of a supported file.

    Raises:
        ValidationError: Missing file or unsupported extension.
    """
    p = Path(path)
    if not p.is_file():
        raise ValidationError(f"File not found: {p}")
    ext = p.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValidationError(
            f"Unsupported file type {ext!r}. Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    text = _extract_pdf(p) if ext in _PDF_EXTS else p.read_text(encoding="utf-8", errors="replace")
    mime_type = mimetypes.guess_type(p.name)[0] or "text/plain"
    return ExtractedFile(
        text=normalize_text(text),
        file_name=p.name,
        file_size=p.stat().st_size,
        mime_type=mime_type,
    )


def _extract_pdf(path: Path) -> str:
    try:
        reader = pypdf.PdfReader(path)
    except PdfReadError as exc:
        raise ValidationError(f"Could not read PDF '{path.name}': {exc}") from exc
    parts: list[str] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        if page_text.strip():
            parts.append(page_text)
    return "\n\n".join(parts)


# ------------------------------------------------------------------
# URLs
# ------------------------------------------------------------------


def fetch_url(url: str) -> str:
    """Validate, fetch, and convert *url* to normalized plain text.

    Raises:
        ValidationError: Bad scheme, private address, or unsupported content.
        ExternalServiceError: Network failure or too many redirects.
    """
    validate_url(url)
    check_ssrf(url)
    raw, content_type = _fetch(url)
    return normalize_text(_to_plain_text(raw, content_type))


def check_ssrf(url: str) -> None:
    """Resolve the hostname and block private/reserved IP ranges."""
    hostname = urllib.parse.urlparse(url).hostname
    if not hostname:
        raise ValidationError(f"URL has no hostname: {url}")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise ValidationError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        try:
            ip = ipaddress.ip_address(addrinfo[4][0])
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise SsrfError(
                f"URL resolves to private address ({ip}). "
                "Access to internal network addresses is not allowed."
            )


def _fetch(url: str) -> tuple[bytes, str]:
    """Fetch *url*; returns (body_bytes, content_type_without_params)."""
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

    try:
        response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
    except (urllib.error.URLError, TimeoutError) as exc:
        raise ExternalServiceError(f"Failed to fetch URL '{url}': {exc}", provider="http") from exc

    with response:
        raw_ct = response.headers.get("Content-Type", "text/html")
        ct = raw_ct.split(";")[0].strip().lower()
        if ct not in _ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
            )

        body = response.read(_MAX_BYTES + 1)
    if len(body) > _MAX_BYTES:
        raise ValidationError(
            f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit for URL '{url}'."
        )
    return body, ct


def _to_plain_text(body: bytes, content_type: str) -> str:
    text = body.decode("utf-8", errors="replace")
    if content_type == "text/plain":
        return text

    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all(["script", "style", "nav", "footer", "head"]):
        tag.decompose()
    return _h2t.handle(str(soup)).strip()


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise ExternalServiceError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'.",
                provider="http",
            )
        return super().redirect_request(req, fp, code, msg, headers, newurl)
