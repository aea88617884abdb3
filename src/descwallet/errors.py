"""
Error taxonomy shared by all wallet operations.

Every public operation raises WalletError. The kind tells the caller whether
the remote data source failed (NETWORK) or the input/library did (INTERNAL);
the message is a short stable signal such as "Address-Parse" or "Wallet-Sync".
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NETWORK = "Network"
    INTERNAL = "Internal"


class WalletError(Exception):
    """Tagged error returned by wallet operations."""

    def __init__(self, kind: ErrorKind, message: str, detail: str | None = None):
        self.kind = kind
        self.message = message
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": str(self)}

    @classmethod
    def internal(cls, message: str, detail: str | None = None) -> WalletError:
        return cls(ErrorKind.INTERNAL, message, detail)

    @classmethod
    def network(cls, message: str, detail: str | None = None) -> WalletError:
        return cls(ErrorKind.NETWORK, message, detail)
