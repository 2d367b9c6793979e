"""
cURL command parser.

Turns a request captured with the browser's "Copy as cURL" into a structured
request plus a list of body fields with suggested placeholders. Used only
while an operator configures an integration, never during a live sync.
"""

import json
import logging
import re
import shlex
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

from .exceptions import CurlParseError
from .models import ParseCurlResult, ParsedCurlField, ParsedCurlRequest
from .placeholders import PLACEHOLDERS, PlaceholderCatalog, format_token

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MULTIPART_CONTENT_TYPE = "multipart/form-data"

# Options whose value we use
_SHORT_OPTIONS = {
    "-X": "request",
    "-H": "header",
    "-b": "cookie",
    "-d": "data",
    "-F": "form",
    "-A": "user-agent",
    "-e": "referer",
    "-u": "user",
}
_LONG_OPTIONS = {
    "--request": "request",
    "--header": "header",
    "--cookie": "cookie",
    "--data": "data",
    "--data-raw": "data",
    "--data-binary": "data",
    "--data-ascii": "data",
    "--data-urlencode": "data-urlencode",
    "--form": "form",
    "--form-string": "form",
    "--url": "url",
    "--user-agent": "user-agent",
    "--referer": "referer",
    "--user": "user",
}

# Options that take a value we ignore
_SHORT_SKIP_WITH_VALUE = {"-o", "-x", "-m", "-c", "-w", "-E", "-K", "-T", "-r", "-U"}
_LONG_SKIP_WITH_VALUE = {
    "--output",
    "--proxy",
    "--proxy-user",
    "--max-time",
    "--connect-timeout",
    "--cookie-jar",
    "--write-out",
    "--cert",
    "--cacert",
    "--key",
    "--retry",
    "--resolve",
    "--limit-rate",
    "--max-redirs",
    "--upload-file",
    "--range",
    "--oauth2-bearer",
}

_ANSI_C_ESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "e": "\x1b",
    "E": "\x1b",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "?": "?",
}

# Field names that mark buyer-side data in typical invoicing CRMs
_CLIENT_MARKERS = re.compile(
    r"contr|client|buyer|customer|kontrahent|nabywca|odbiorca"
)

# (field name pattern, token for client fields, token for seller fields)
_NAME_HINTS: List[Tuple[re.Pattern, Optional[str], Optional[str]]] = [
    (
        re.compile(r"^(client_?id|buyer_?id|contractor_?id)$"),
        "client.crmClientId",
        "client.crmClientId",
    ),
    (
        re.compile(r"^requisites_?id$"),
        "bankAccount.crmRequisitesId",
        "bankAccount.crmRequisitesId",
    ),
    (
        re.compile(r"company|^name$|^firma$|^nazwa$"),
        "client.name",
        "user.name",
    ),
    (
        re.compile(r"nip|tax_?id|^vat_?id$|^ico$"),
        "client.nip",
        "user.nip",
    ),
    (
        re.compile(r"address|street|addr|^ulica$"),
        "client.streetAddress",
        "user.streetAddress",
    ),
    (
        re.compile(r"postcode|postal|zip|index|^psc$"),
        "client.postcode",
        "user.postcode",
    ),
    (
        re.compile(r"city|^mesto$|^miasto$"),
        "client.city",
        "user.city",
    ),
    (
        re.compile(r"country|^stat$|^kraj$"),
        "client.country",
        "user.country",
    ),
    (
        re.compile(r"^requisite$|iban|^ucet$|^konto$"),
        "client.bankAccount",
        "bankAccount.iban",
    ),
    (re.compile(r"^name_bank$|^bank$|bank_?name"), None, "bankAccount.bankName"),
    (re.compile(r"^swift$|bic"), None, "bankAccount.swift"),
    (
        re.compile(r"^numberf(auto)?$|^invoice_?number$|cislo"),
        "invoice.numberFormatted",
        "invoice.numberFormatted",
    ),
    (re.compile(r"^number$"), "invoice.number", "invoice.number"),
    (
        re.compile(r"currency|^selectval$|^mena$|^waluta$"),
        "invoice.currency",
        "invoice.currency",
    ),
    (
        re.compile(r"lang|^jazyk$|^jezyk$"),
        "invoice.language",
        "invoice.language",
    ),
    (
        re.compile(r"netto|net_?amount|sum.*net"),
        "invoice.netAmount",
        "invoice.netAmount",
    ),
    (re.compile(r"brutto|gross"), "invoice.grossAmount", "invoice.grossAmount"),
    (
        re.compile(r"sumvat|vat_?amount|vat.*(sum|zl)"),
        "invoice.vatAmount",
        "invoice.vatAmount",
    ),
    (re.compile(r"amount|kwota|total"), "invoice.amount", "invoice.amount"),
    (
        re.compile(r"name[12]|servicename|^service$|description|^opis$"),
        "invoice.description",
        "invoice.description",
    ),
    (re.compile(r"email"), "client.email", "user.email"),
    (
        re.compile(
            r"^datasales$|^datapredaj$|issue_?date|^data_wystawienia$"
            r"|^datum_vystaveni$|^data_sprzedazy$"
        ),
        "invoice.date",
        "invoice.date",
    ),
    (
        re.compile(
            r"^datapay$|^datasplatnosti$|due_?date|^data_platnosci$"
            r"|^datum_splatnosti$|^termin_platnosci$"
        ),
        "invoice.dueDate",
        "invoice.dueDate",
    ),
    (
        re.compile(r"^datados$|^datadodani$|delivery_?date|^data_dostawy$"),
        "invoice.deliveryDate",
        "invoice.deliveryDate",
    ),
]


def _read_ansi_c(text: str, start: int) -> Tuple[str, int]:
    """Decode a bash $'...' string body starting after the opening quote."""
    buf: List[str] = []
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "'":
            return "".join(buf), i + 1
        if ch == "\\" and i + 1 < n:
            nxt = text[i + 1]
            if nxt in ("x", "u", "U"):
                width = {"x": 2, "u": 4, "U": 8}[nxt]
                match = re.match(r"[0-9a-fA-F]{1,%d}" % width, text[i + 2 :])
                if match:
                    buf.append(chr(int(match.group(0), 16)))
                    i += 2 + len(match.group(0))
                    continue
            if nxt in _ANSI_C_ESCAPES:
                buf.append(_ANSI_C_ESCAPES[nxt])
            else:
                buf.append("\\" + nxt)
            i += 2
            continue
        buf.append(ch)
        i += 1
    raise CurlParseError("Unbalanced quotes in cURL command")


def _expand_ansi_c_quotes(text: str) -> str:
    """Rewrite bash $'...' strings as plain single-quoted shell words."""
    out: List[str] = []
    quote: Optional[str] = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            out.append(ch)
            if ch == "\\" and quote == '"' and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch == "$" and i + 1 < n and text[i + 1] == "'":
            decoded, i = _read_ansi_c(text, i + 2)
            out.append(shlex.quote(decoded))
            continue
        if ch == "\\" and i + 1 < n:
            out.append(text[i : i + 2])
            i += 2
            continue
        if ch in ("'", '"'):
            quote = ch
        out.append(ch)
        i += 1
    return "".join(out)


def _tokenize(curl_text: str) -> List[str]:
    # Join "\" line continuations (bash) before shell-splitting
    normalized = re.sub(r"\\\r?\n", " ", curl_text).strip()
    normalized = _expand_ansi_c_quotes(normalized)
    try:
        return shlex.split(normalized)
    except ValueError as e:
        raise CurlParseError(f"Unbalanced quotes in cURL command: {e}")


def _parse_cookie_string(cookie_string: str, target: Dict[str, str]) -> None:
    for part in cookie_string.split(";"):
        name, sep, value = part.partition("=")
        name = name.strip()
        if name and sep:
            target[name] = value.strip()


class CurlCommandParser:
    """Parser for browser-exported cURL commands."""

    def __init__(self, catalog: PlaceholderCatalog = PLACEHOLDERS):
        self.catalog = catalog

    def parse(self, curl_text: str) -> ParseCurlResult:
        """
        Parse a cURL command into a request and suggested field mapping.

        Never raises for bad input; failures are reported in the result.
        """
        try:
            request = self.parse_request(curl_text)
        except CurlParseError as e:
            logger.info(f"Rejected cURL command: {e.message}")
            return ParseCurlResult(success=False, error=e.message)

        fields = [
            ParsedCurlField(
                name=name,
                value=value,
                suggestedPlaceholder=self.suggest_placeholder(name, value),
            )
            for name, value in request.body.items()
        ]
        return ParseCurlResult(success=True, request=request, fields=fields)

    def parse_request(self, curl_text: str) -> ParsedCurlRequest:
        """
        Parse a cURL command into a structured request.

        Raises:
            CurlParseError: If the command is malformed or has no URL
        """
        if not curl_text or not curl_text.strip():
            raise CurlParseError("cURL command is empty")

        tokens = _tokenize(curl_text)
        if not tokens or not tokens[0].lower().startswith("curl"):
            raise CurlParseError('Command must start with "curl"')

        url: Optional[str] = None
        method: Optional[str] = None
        get_mode = False
        headers: Dict[str, str] = {}
        cookies: Dict[str, str] = {}
        data_parts: List[str] = []
        urlencoded_pairs: List[Tuple[str, str]] = []
        form_pairs: List[Tuple[str, str]] = []

        i = 1
        while i < len(tokens):
            token = tokens[i]
            option: Optional[str] = None
            value: Optional[str] = None

            if token.startswith("--"):
                name, eq, inline = token.partition("=")
                if name in _LONG_OPTIONS or name in _LONG_SKIP_WITH_VALUE:
                    if eq:
                        value = inline
                    else:
                        i += 1
                        if i >= len(tokens):
                            raise CurlParseError(f"Missing value for {name}")
                        value = tokens[i]
                    option = _LONG_OPTIONS.get(name)
                elif name == "--get":
                    get_mode = True
                elif name == "--head":
                    method = method or "HEAD"
            elif token.startswith("-") and len(token) > 1:
                flag, attached = token[:2], token[2:]
                if flag in _SHORT_OPTIONS or flag in _SHORT_SKIP_WITH_VALUE:
                    if attached:
                        value = attached
                    else:
                        i += 1
                        if i >= len(tokens):
                            raise CurlParseError(f"Missing value for {flag}")
                        value = tokens[i]
                    option = _SHORT_OPTIONS.get(flag)
                elif "G" in token[1:]:
                    get_mode = True
                elif "I" in token[1:]:
                    method = method or "HEAD"
            elif url is None:
                url = token

            if option and value is not None:
                if option == "request":
                    method = value.upper()
                elif option == "url":
                    url = value
                elif option == "header":
                    self._add_header(value, headers, cookies)
                elif option == "cookie":
                    # "-b file.txt" names a cookie file; only inline jars are kept
                    if "=" in value:
                        _parse_cookie_string(value, cookies)
                elif option == "data":
                    if value.startswith("@"):
                        raise CurlParseError(
                            f"Body is read from a file ({value}); "
                            "copy the request with inline data instead"
                        )
                    data_parts.append(value)
                elif option == "data-urlencode":
                    name, sep, content = value.partition("=")
                    urlencoded_pairs.append((name, content) if sep else ("", name))
                elif option == "form":
                    name, _, content = value.partition("=")
                    form_pairs.append((name, content))
                elif option == "user-agent":
                    headers["User-Agent"] = value
                elif option == "referer":
                    headers["Referer"] = value
            i += 1

        if not url:
            raise CurlParseError("No URL found in cURL command")

        has_body = bool(data_parts or urlencoded_pairs or form_pairs)
        header_content_type = next(
            (v for k, v in headers.items() if k.lower() == "content-type"), None
        )

        if get_mode and (data_parts or urlencoded_pairs):
            # -G moves the data into the query string
            query = "&".join(data_parts + [f"{k}={v}" for k, v in urlencoded_pairs])
            url = f"{url}{'&' if '?' in url else '?'}{query}"
            data_parts, urlencoded_pairs = [], []
            has_body = bool(form_pairs)

        if form_pairs:
            content_type = header_content_type or MULTIPART_CONTENT_TYPE
        elif has_body:
            content_type = header_content_type or FORM_CONTENT_TYPE
        else:
            content_type = header_content_type or ""

        body = self._parse_body(
            data_parts, urlencoded_pairs, form_pairs, content_type
        )

        if method is None:
            method = "POST" if has_body else "GET"

        return ParsedCurlRequest(
            url=url,
            method=method,
            headers=headers,
            cookies=cookies,
            body=body,
            contentType=content_type,
        )

    def suggest_placeholder(self, name: str, value: str) -> Optional[str]:
        """
        Suggest a placeholder token for a body field.

        Order: exact value match against catalog examples, then
        case-insensitive substring match against examples and descriptions,
        then well-known field names. Within a tier the first catalog entry wins.
        """
        stripped = value.strip()

        if stripped:
            for token, info in self.catalog.items():
                if stripped == info.example:
                    return token

        if len(stripped) >= 3:
            needle = stripped.lower()
            for token, info in self.catalog.items():
                example = info.example.lower()
                if (
                    needle in example
                    or (len(example) >= 3 and example in needle)
                    or needle in info.description.lower()
                ):
                    return token

        name_lower = name.lower()
        is_client_field = bool(_CLIENT_MARKERS.search(name_lower))
        for pattern, client_token, seller_token in _NAME_HINTS:
            if not pattern.search(name_lower):
                continue
            suggestion = client_token if is_client_field else seller_token
            if suggestion is None:
                continue
            token = format_token(suggestion)
            if token in self.catalog:
                return token

        return None

    def _add_header(
        self, raw: str, headers: Dict[str, str], cookies: Dict[str, str]
    ) -> None:
        name, sep, value = raw.partition(":")
        name = name.strip()
        if not sep:
            # curl's "Name;" form sends an empty header
            name = name.rstrip(";").strip()
        if not name:
            raise CurlParseError(f"Invalid header: {raw}")
        value = value.strip()

        if name.lower() == "cookie":
            _parse_cookie_string(value, cookies)
            return
        headers[name] = value

    def _parse_body(
        self,
        data_parts: List[str],
        urlencoded_pairs: List[Tuple[str, str]],
        form_pairs: List[Tuple[str, str]],
        content_type: str,
    ) -> Dict[str, str]:
        body: Dict[str, str] = {}

        if form_pairs:
            for name, value in form_pairs:
                body[name] = value
            return body

        if not data_parts and not urlencoded_pairs:
            return body

        if FORM_CONTENT_TYPE in content_type.lower():
            for part in data_parts:
                for key, value in parse_qsl(part, keep_blank_values=True):
                    body[key] = value
            for key, value in urlencoded_pairs:
                body[key] = value
            return body

        # Anything else is treated as a JSON document
        text = "&".join(data_parts + [v for _, v in urlencoded_pairs])
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise CurlParseError(
                f"Body is not valid JSON for content type '{content_type}': {e}"
            )
        if not isinstance(document, dict):
            raise CurlParseError("JSON body must be an object")

        for key, value in document.items():
            body[key] = (
                value
                if isinstance(value, str)
                else json.dumps(value, separators=(",", ":"), ensure_ascii=False)
            )
        return body


def parse_curl_command(curl_text: str) -> ParseCurlResult:
    """Parse a cURL command with the default placeholder catalog."""
    return CurlCommandParser().parse(curl_text)
