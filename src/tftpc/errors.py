from __future__ import annotations


class TftpError(Exception):
    """Base class for every failure the client reports."""


class UsageError(TftpError):
    pass


class ConnectError(TftpError):
    """Local file, name resolution or socket could not be set up (or broke)."""


class TransferError(TftpError):
    """The transfer started but did not complete."""


class TimeoutExhausted(TransferError):
    def __init__(self, attempts: int, block: int):
        super().__init__(f"no reply after {attempts} attempts (block {block})")
        self.attempts = attempts
        self.block = block


class ProtocolError(TransferError):
    pass


class PeerError(TransferError):
    def __init__(self, code: int, message: str):
        super().__init__(f"server error {code}: {message}")
        self.code = code
        self.message = message


class TransferIOError(TransferError):
    pass
