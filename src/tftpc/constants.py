from __future__ import annotations

TFTP_PORT = 69
BLOCK_SIZE = 512

OPCODE_FORMAT = "!H"
BLOCK_HEADER_FORMAT = "!HH"  # opcode, block number / error code
DATA_HEADER_LEN = 4
MAX_MESSAGE_LEN = DATA_HEADER_LEN + BLOCK_SIZE
MAX_BLOCK_NUMBER = 0xFFFF

RRQ = 1
WRQ = 2
DATA = 3
ACK = 4
ERROR = 5

MODE_OCTET = "octet"
MODE_NETASCII = "netascii"

ERR_NOT_DEFINED = 0
ERR_FILE_NOT_FOUND = 1
ERR_ACCESS_VIOLATION = 2
ERR_DISK_FULL = 3
ERR_ILLEGAL_OPERATION = 4
ERR_UNKNOWN_TID = 5
ERR_FILE_EXISTS = 6
ERR_NO_SUCH_USER = 7

DEFAULT_TIMEOUT_MS = 2000
DEFAULT_MAX_RETRIES = 5

# largest payload a single UDP datagram can carry behind the data header
MAX_DATA_PAYLOAD = 65464
