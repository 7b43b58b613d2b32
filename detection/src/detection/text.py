# Copyright (c) 2026 John Earle
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Text helpers shared by the analyzers: HTML stripping, URL extraction and
domain normalisation.
"""
import re
from html.parser import HTMLParser


# ---------------------------------------------------------------------------
# HTML text extraction
# ---------------------------------------------------------------------------
class _HTMLTextExtractor(HTMLParser):
    """Extract plain text from HTML, stripping all tags."""

    def __init__(self):
        super().__init__()
        self._text: list[str] = []
        self._skip = False

    def handle_starttag(self, tag, attrs):
        if tag in ("style", "script", "head"):
            self._skip = True

    def handle_endtag(self, tag):
        if tag in ("style", "script", "head"):
            self._skip = False

    def handle_data(self, data):
        if not self._skip:
            self._text.append(data)

    def get_text(self) -> str:
        return " ".join(self._text)


def strip_html(html: str) -> str:
    """Convert HTML to whitespace-normalised plain text."""
    extractor = _HTMLTextExtractor()
    try:
        extractor.feed(html)
        text = extractor.get_text()
    except Exception:
        text = re.sub(r"<[^>]+>", " ", html)
    return re.sub(r"\s+", " ", text).strip()


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

URL_PATTERN = re.compile(r'https?://[^\s<>"\')\]]+', re.IGNORECASE)

# Sentence punctuation glued to the end of a URL in running text
_TRAILING_PUNCTUATION = ".,;:!?"


def extract_urls(*texts: str) -> list[str]:
    """Return the unique URLs found in the given texts, in first-seen order."""
    seen: dict[str, None] = {}
    for text in texts:
        if not text:
            continue
        for match in URL_PATTERN.findall(text):
            url = match.rstrip(_TRAILING_PUNCTUATION)
            if url:
                seen.setdefault(url, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------

_MULTI_PART_TLDS = frozenset({
    "co.uk", "co.in", "com.au", "co.jp", "co.kr", "com.br",
    "co.nz", "co.za", "com.mx", "com.sg", "com.hk",
})


def domain_of(address: str) -> str:
    """Extract the lower-cased domain from an email address (or bare domain)."""
    if not address:
        return ""
    address = address.strip().strip("<>")
    if "@" in address:
        return address.rsplit("@", 1)[-1].strip().strip(">").lower()
    return address.lower()


def root_domain(domain: str) -> str:
    """Extract the registrable root domain, e.g. 'mail.creditkarma.com' -> 'creditkarma.com'."""
    parts = domain.lower().strip().split(".")
    if len(parts) <= 2:
        return domain.lower().strip()

    last_two = ".".join(parts[-2:])
    if last_two in _MULTI_PART_TLDS and len(parts) >= 3:
        return ".".join(parts[-3:])

    return ".".join(parts[-2:])


def domain_matches(domain: str, candidates) -> bool:
    """True if domain equals, or is a subdomain of, any candidate domain."""
    domain = domain.lower()
    for candidate in candidates:
        candidate = candidate.lower()
        if domain == candidate or domain.endswith("." + candidate):
            return True
    return False
