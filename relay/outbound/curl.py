"""
curl Command Translator

Turns a captured shell ``curl`` command (as copied from browser devtools)
into an OutboundRequest.

Supported options:
- -X/--request, -I/--head, -G/--get, -T/--upload-file
- -H/--header (Cookie headers become ``cookies``), -A/--user-agent, -e/--referer
- -b/--cookie
- -d/--data, --data-raw, --data-binary, --data-ascii, --data-urlencode
  (repeated values are joined with "&")
- -F/--form (implies POST; multipart fields are not forwarded)
- -u/--user, -k/--insecure, --url, --compressed

Other options are accepted and ignored. Options known to take a value
consume the next token; unknown options are treated as flags.
"""

from __future__ import annotations

import logging
import re
import shlex

from relay.outbound.request import OutboundRequest

logger = logging.getLogger(__name__)


class CurlParseError(ValueError):
    """Raised when a curl command cannot be translated."""


# Canonical long names for short options
SHORT_OPTIONS = {
    "X": "request",
    "H": "header",
    "d": "data",
    "A": "user-agent",
    "b": "cookie",
    "u": "user",
    "F": "form",
    "T": "upload-file",
    "e": "referer",
    "o": "output",
    "x": "proxy",
    "m": "max-time",
    "I": "head",
    "G": "get",
    "k": "insecure",
    "L": "location",
    "s": "silent",
    "S": "show-error",
    "i": "include",
    "v": "verbose",
    "f": "fail",
}

VALUE_OPTIONS = frozenset({
    "request", "header", "data", "data-raw", "data-binary", "data-ascii",
    "data-urlencode", "user-agent", "cookie", "user", "form", "form-string",
    "upload-file", "referer", "output", "proxy", "max-time", "connect-timeout",
    "url", "cert", "key", "cacert", "resolve", "retry",
})

DATA_OPTIONS = frozenset({"data", "data-raw", "data-binary", "data-ascii", "data-urlencode"})


def _normalize(command: str) -> str:
    # Line continuations from multi-line devtools captures
    command = re.sub(r"\\\r?\n", " ", command)
    return command.strip()


def _tokenize(command: str) -> list[str]:
    try:
        tokens = shlex.split(command)
    except ValueError as e:
        raise CurlParseError(f"Cannot tokenize curl command: {e}") from e
    if tokens and tokens[0] == "curl":
        tokens = tokens[1:]
    return tokens


def _read_options(tokens: list[str]) -> tuple[list[tuple[str, str | None]], list[str]]:
    """Split tokens into (option, value) pairs and positional arguments."""
    options: list[tuple[str, str | None]] = []
    positional: list[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1

        if token.startswith("--") and len(token) > 2:
            name, sep, value = token[2:].partition("=")
            if sep:
                options.append((name, value))
            elif name in VALUE_OPTIONS and i < len(tokens):
                options.append((name, tokens[i]))
                i += 1
            else:
                options.append((name, None))
            continue

        if token.startswith("-") and len(token) > 1:
            letter = token[1]
            name = SHORT_OPTIONS.get(letter, letter)
            if name in VALUE_OPTIONS:
                if len(token) > 2:
                    # Attached value, e.g. -XPOST
                    options.append((name, token[2:]))
                elif i < len(tokens):
                    options.append((name, tokens[i]))
                    i += 1
                continue
            # Flag cluster, e.g. -sSL
            for letter in token[1:]:
                options.append((SHORT_OPTIONS.get(letter, letter), None))
            continue

        positional.append(token)
    return options, positional


def _parse_cookies(cookie_string: str) -> dict[str, str]:
    cookies: dict[str, str] = {}
    cookie_string = re.sub(r"^cookie:\s*", "", cookie_string.strip(), flags=re.IGNORECASE)
    for part in cookie_string.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            cookies[name] = value
    return cookies


def _find_url(options: list[tuple[str, str | None]], positional: list[str]) -> str | None:
    for name, value in options:
        if name == "url" and value:
            return value
    if positional:
        return positional[0]
    for _, value in options:
        if value and (value.startswith("http") or value.startswith("www.")):
            return value
    return None


def parse_curl_command(command: str) -> OutboundRequest:
    """
    Translate a curl command line.

    Args:
        command: Raw shell command, with or without the leading ``curl``

    Returns:
        The equivalent outbound request descriptor

    Raises:
        CurlParseError: If the command cannot be tokenized or has no URL
    """
    if not command or not command.strip():
        raise CurlParseError("Empty curl command")

    options, positional = _read_options(_tokenize(_normalize(command)))

    url = _find_url(options, positional)
    if not url:
        raise CurlParseError("No URL found in curl command")
    if url.startswith("www."):
        url = f"http://{url}"

    headers: dict[str, str] = {}
    cookie_string: str | None = None
    data: list[str] = []
    explicit_method: str | None = None
    auth: str | None = None
    flags: set[str] = set()

    for name, value in options:
        if value is None:
            flags.add(name)
            continue
        if name == "request":
            if value.lower() != "null":
                explicit_method = value.upper()
        elif name == "header":
            header_name, sep, header_value = value.partition(":")
            if not sep:
                logger.debug(f"Skipping malformed header: {value!r}")
                continue
            if header_name.strip().lower() == "cookie":
                cookie_string = header_value.strip()
            else:
                headers[header_name.strip()] = header_value.strip()
        elif name == "user-agent":
            headers["User-Agent"] = value
        elif name == "referer":
            headers["Referer"] = value
        elif name == "cookie":
            cookie_string = value
        elif name in DATA_OPTIONS:
            data.append(value)
        elif name in ("form", "form-string"):
            flags.add("form")
        elif name == "upload-file":
            flags.add("upload-file")
        elif name == "user":
            auth = value

    body = "&".join(data) if data else None
    use_get = "get" in flags

    if use_get and body is not None:
        url = f"{url}{'&' if '?' in url else '?'}{body}"
        body = None

    if explicit_method:
        method = explicit_method
    elif "upload-file" in flags:
        method = "PUT"
    elif (body is not None or "form" in flags) and not use_get:
        method = "POST"
    elif "head" in flags:
        method = "HEAD"
    else:
        method = "GET"

    if "form" in flags:
        logger.info("curl -F fields are not forwarded; only the method is applied")

    return OutboundRequest(
        url=url,
        method=method,
        headers=headers,
        data=body,
        cookies=_parse_cookies(cookie_string) if cookie_string else None,
        auth=auth,
        insecure="insecure" in flags,
    )
