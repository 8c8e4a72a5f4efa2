# Outbound Requests
# Request descriptors, the curl translator and single-shot fetches

from relay.outbound.request import OutboundRequest, OutboundRequestError, sanitize_headers
from relay.outbound.curl import CurlParseError, parse_curl_command

__all__ = [
    "OutboundRequest",
    "OutboundRequestError",
    "sanitize_headers",
    "CurlParseError",
    "parse_curl_command",
]
