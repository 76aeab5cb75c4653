from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import ClassVar, Union

from .constants import (
    ACK,
    BLOCK_HEADER_FORMAT,
    DATA,
    DATA_HEADER_LEN,
    ERR_ACCESS_VIOLATION,
    ERR_DISK_FULL,
    ERR_FILE_EXISTS,
    ERR_FILE_NOT_FOUND,
    ERR_ILLEGAL_OPERATION,
    ERR_NO_SUCH_USER,
    ERR_NOT_DEFINED,
    ERR_UNKNOWN_TID,
    ERROR,
    MAX_BLOCK_NUMBER,
    MAX_DATA_PAYLOAD,
    MAX_MESSAGE_LEN,
    MODE_OCTET,
    OPCODE_FORMAT,
    RRQ,
    WRQ,
)


class EncodingError(ValueError):
    pass


class MalformedMessage(ValueError):
    pass


class Opcode(enum.IntEnum):
    RRQ = RRQ
    WRQ = WRQ
    DATA = DATA
    ACK = ACK
    ERROR = ERROR


class ErrorCode(enum.IntEnum):
    NOT_DEFINED = ERR_NOT_DEFINED
    FILE_NOT_FOUND = ERR_FILE_NOT_FOUND
    ACCESS_VIOLATION = ERR_ACCESS_VIOLATION
    DISK_FULL = ERR_DISK_FULL
    ILLEGAL_OPERATION = ERR_ILLEGAL_OPERATION
    UNKNOWN_TID = ERR_UNKNOWN_TID
    FILE_EXISTS = ERR_FILE_EXISTS
    NO_SUCH_USER = ERR_NO_SUCH_USER


ERROR_MESSAGES = {
    ErrorCode.NOT_DEFINED: "Not defined, see error message (if any)",
    ErrorCode.FILE_NOT_FOUND: "File not found",
    ErrorCode.ACCESS_VIOLATION: "Access violation",
    ErrorCode.DISK_FULL: "Disk full or allocation exceeded",
    ErrorCode.ILLEGAL_OPERATION: "Illegal TFTP operation",
    ErrorCode.UNKNOWN_TID: "Unknown transfer ID",
    ErrorCode.FILE_EXISTS: "File already exists",
    ErrorCode.NO_SUCH_USER: "No such user",
}


def _check_u16(value: int, what: str) -> None:
    if not 0 <= value <= MAX_BLOCK_NUMBER:
        raise EncodingError(f"{what} out of range: {value}")


def _text_field(value: str, what: str, *, allow_empty: bool = False, encoding: str = "utf-8") -> bytes:
    if not value and not allow_empty:
        raise EncodingError(f"{what} must not be empty")
    try:
        raw = value.encode(encoding)
    except UnicodeEncodeError:
        raise EncodingError(f"{what} must be {encoding} text: {value!r}") from None
    if b"\0" in raw:
        raise EncodingError(f"{what} must not contain NUL")
    return raw


@dataclass(frozen=True, slots=True)
class _Request:
    filename: str
    mode: str = MODE_OCTET

    OPCODE: ClassVar[Opcode]

    def to_bytes(self) -> bytes:
        raw = b"".join(
            (
                struct.pack(OPCODE_FORMAT, self.OPCODE),
                _text_field(self.filename, "filename"),
                b"\0",
                _text_field(self.mode, "mode", encoding="ascii"),
                b"\0",
            )
        )
        if len(raw) > MAX_MESSAGE_LEN:
            raise EncodingError(f"request is {len(raw)} bytes, limit is {MAX_MESSAGE_LEN}")
        return raw

    @classmethod
    def from_bytes(cls, raw: bytes):
        # filename NUL mode NUL, optionally followed by option pairs we don't use
        fields = raw[2:].split(b"\0")
        if len(fields) < 3 or not fields[0] or not fields[1]:
            raise MalformedMessage("request needs a filename and a mode, both NUL-terminated")
        try:
            filename = fields[0].decode("utf-8")
            mode = fields[1].decode("ascii")
        except UnicodeDecodeError as exc:
            raise MalformedMessage(f"undecodable request field: {exc}") from None
        return cls(filename=filename, mode=mode)


@dataclass(frozen=True, slots=True)
class ReadRequest(_Request):
    OPCODE: ClassVar[Opcode] = Opcode.RRQ


@dataclass(frozen=True, slots=True)
class WriteRequest(_Request):
    OPCODE: ClassVar[Opcode] = Opcode.WRQ


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b""

    OPCODE: ClassVar[Opcode] = Opcode.DATA

    def to_bytes(self, limit: int = MAX_DATA_PAYLOAD) -> bytes:
        """Frame the block; ``limit`` is the negotiated block size, if the caller has one."""
        _check_u16(self.block, "block number")
        if len(self.payload) > limit:
            raise EncodingError(f"payload too large: {len(self.payload)} > {limit}")
        return struct.pack(BLOCK_HEADER_FORMAT, self.OPCODE, self.block) + self.payload

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Data":
        if len(raw) < DATA_HEADER_LEN:
            raise MalformedMessage("data message shorter than its header")
        _, block = struct.unpack_from(BLOCK_HEADER_FORMAT, raw)
        return cls(block=block, payload=bytes(raw[DATA_HEADER_LEN:]))


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    OPCODE: ClassVar[Opcode] = Opcode.ACK

    def to_bytes(self) -> bytes:
        _check_u16(self.block, "block number")
        return struct.pack(BLOCK_HEADER_FORMAT, self.OPCODE, self.block)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Ack":
        if len(raw) < DATA_HEADER_LEN:
            raise MalformedMessage("ack shorter than 4 bytes")
        _, block = struct.unpack_from(BLOCK_HEADER_FORMAT, raw)
        return cls(block=block)


@dataclass(frozen=True, slots=True)
class Error:
    code: int
    message: str = ""

    OPCODE: ClassVar[Opcode] = Opcode.ERROR

    @classmethod
    def from_code(cls, code: ErrorCode, message: str | None = None) -> "Error":
        return cls(code=int(code), message=ERROR_MESSAGES[code] if message is None else message)

    def to_bytes(self) -> bytes:
        _check_u16(self.code, "error code")
        raw = (
            struct.pack(BLOCK_HEADER_FORMAT, self.OPCODE, self.code)
            + _text_field(self.message, "error message", allow_empty=True)
            + b"\0"
        )
        if len(raw) > MAX_MESSAGE_LEN:
            raise EncodingError(f"error message is {len(raw)} bytes, limit is {MAX_MESSAGE_LEN}")
        return raw

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Error":
        if len(raw) < DATA_HEADER_LEN:
            raise MalformedMessage("error message shorter than its header")
        _, code = struct.unpack_from(BLOCK_HEADER_FORMAT, raw)
        # some servers omit the trailing NUL
        text = raw[DATA_HEADER_LEN:].split(b"\0", 1)[0]
        return cls(code=code, message=text.decode("utf-8", errors="replace"))


Message = Union[ReadRequest, WriteRequest, Data, Ack, Error]

_DECODERS = {
    Opcode.RRQ: ReadRequest.from_bytes,
    Opcode.WRQ: WriteRequest.from_bytes,
    Opcode.DATA: Data.from_bytes,
    Opcode.ACK: Ack.from_bytes,
    Opcode.ERROR: Error.from_bytes,
}


def encode(msg: Message) -> bytes:
    return msg.to_bytes()


def decode(raw: bytes) -> Message:
    """Parse one received datagram into its message variant.

    Raises MalformedMessage for short datagrams and unknown opcodes.
    """
    if len(raw) < struct.calcsize(OPCODE_FORMAT):
        raise MalformedMessage("datagram too small to carry an opcode")
    (value,) = struct.unpack_from(OPCODE_FORMAT, raw)
    try:
        opcode = Opcode(value)
    except ValueError:
        raise MalformedMessage(f"unknown opcode {value}") from None
    return _DECODERS[opcode](raw)
