"""Domain-specific exceptions"""

from __future__ import annotations

from enum import Enum


class ZenbotError(Exception):
    """Base exception for the bot"""


class ProposalParseError(ZenbotError):
    """Proposal message text does not match the four-line layout"""

    def __init__(self, message: str, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing


class LedgerError(ZenbotError):
    """ZenMoney rejected a request or could not be reached"""


class VoiceFailure(str, Enum):
    TIMEOUT = "timeout"
    CREDENTIAL = "credential"
    FILE_ACCESS = "file_access"
    GENERIC = "generic"


class TranscriptionError(ZenbotError):
    """Downloading or transcribing a voice message failed"""

    def __init__(self, message: str, kind: VoiceFailure = VoiceFailure.GENERIC) -> None:
        super().__init__(message)
        self.kind = kind
