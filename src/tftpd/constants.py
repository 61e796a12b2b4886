from __future__ import annotations

RRQ = 1
WRQ = 2
DATA = 3
ACK = 4
ERROR = 5

BLOCK_SIZE = 512
HEADER_SIZE = 4
MAX_DATAGRAM = HEADER_SIZE + BLOCK_SIZE
RECV_BUFSIZE = 65535
BLOCK_MODULUS = 1 << 16

MODE_NETASCII = "netascii"
MODE_OCTET = "octet"
MODE_MAIL = "mail"

DEFAULT_PORT = 69
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_MAX_RETRIES = 5
