from pathlib import Path

from forwardarr.errors import ParseError, PortFileUnavailable, RangeError

MIN_PORT = 1
MAX_PORT = 65535


def parse_port(data: bytes | str) -> int:
    """Return the port number held in ``data``.

    Surrounding whitespace is ignored. Anything other than a run of ASCII
    digits raises ``ParseError``; a number outside 1-65535 raises
    ``RangeError``.
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"port file is not valid UTF-8: {exc}") from exc
    else:
        text = data

    value = text.strip()
    if not value:
        raise ParseError("port file is empty")
    # str.isdigit() accepts superscripts and other unicode digits
    if not value.isascii() or not value.isdigit():
        raise ParseError(f"invalid port value {value!r}")
    # int() refuses strings past sys.get_int_max_str_digits()
    if len(value.lstrip("0")) > len(str(MAX_PORT)):
        raise RangeError(f"port value of {len(value)} digits out of range {MIN_PORT}-{MAX_PORT}")

    port = int(value, 10)
    if port < MIN_PORT or port > MAX_PORT:
        raise RangeError(f"port {port} out of range {MIN_PORT}-{MAX_PORT}")
    return port


def read_port_file(path: Path) -> int:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise PortFileUnavailable(f"cannot read {path}: {exc}") from exc
    return parse_port(data)
