import base64
import binascii
import re
from urllib.parse import parse_qs, urlparse

from debrid_stream.errors import InvalidIdentifier

VIDEO_EXTENSIONS = (
    '.mp4', '.mkv', '.avi', '.mov', '.wmv', '.flv', '.webm', '.m4v',
    '.mpg', '.mpeg', '.m2v', '.3gp', '.3g2', '.mxf', '.ts',
)

_INFO_HASH_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_BASE32_HASH_RE = re.compile(r"^[A-Za-z2-7]{32}$")


def is_info_hash(value):
    """True for a bare 40-character hex info-hash."""
    return bool(value) and bool(_INFO_HASH_RE.match(value))


def is_video_file(filename):
    return filename.lower().endswith(VIDEO_EXTENSIONS)


def magnet_for(info_hash):
    return f"magnet:?xt=urn:btih:{info_hash.lower()}"


def normalize_identifier(raw):
    """
    Turns a bare info-hash into a magnet URI. Magnet URIs and torrent-file
    URLs pass through unchanged (apart from surrounding whitespace).
    """
    identifier = (raw or "").strip()
    if not identifier:
        raise InvalidIdentifier("Missing torrent identifier (infoHash, magnet, or torrentUrl required)")
    if is_info_hash(identifier):
        return magnet_for(identifier)
    return identifier


def info_hash_from_magnet(magnet_uri):
    """
    Extracts the v1 info-hash from a magnet URI as lowercase hex.
    Accepts both hex and base32 encoded `urn:btih:` values.
    """
    query = parse_qs(urlparse(magnet_uri).query)
    for topic in query.get("xt", []):
        if not topic.lower().startswith("urn:btih:"):
            continue
        value = topic[len("urn:btih:"):]
        if is_info_hash(value):
            return value.lower()
        if _BASE32_HASH_RE.match(value):
            try:
                return base64.b32decode(value.upper()).hex()
            except binascii.Error:
                break
    raise InvalidIdentifier(f"Magnet URI has no usable btih info-hash: {magnet_uri[:80]}")


def is_torrent_url(identifier):
    return urlparse(identifier).scheme in ("http", "https")


def parse_identifier(raw):
    """
    Resolves an identifier without touching the network.

    Returns a TorrentSource for info-hashes and magnet URIs, or None for
    torrent-file URLs (their info-hash is only known once the file has been
    fetched). Anything else raises InvalidIdentifier.
    """
    from debrid_stream.models import TorrentSource

    identifier = normalize_identifier(raw)
    if identifier.lower().startswith("magnet:"):
        return TorrentSource(info_hash=info_hash_from_magnet(identifier), uri=identifier)
    if is_torrent_url(identifier):
        return None
    raise InvalidIdentifier(f"Unrecognised torrent identifier: {identifier[:80]}")


def format_bytes(num_bytes, decimals=2):
    """Formats a byte count for log lines, e.g. 1536 -> '1.5 KB'."""
    if num_bytes == 0:
        return "0 Bytes"
    sizes = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{round(value, max(decimals, 0)):g} {sizes[i]}"
