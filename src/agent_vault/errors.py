"""Exception hierarchy for the wallet vault.

Every error derives from :class:`WalletError` and from the builtin exception
callers would otherwise expect for the same situation, so ``except ValueError``
style handlers keep working.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all vault errors."""


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


class InvalidSeedPhrase(WalletError, ValueError):
    """The seed phrase has the wrong length, unknown words or a bad checksum."""


class InvalidDerivationPath(WalletError, ValueError):
    """The derivation path is not of the form ``m/44'/...``."""


class UnsupportedCreationMethod(WalletError, ValueError):
    """The creation method is unknown or its secret material is missing."""


class InvalidSeedStrength(WalletError, ValueError):
    """The requested entropy size is not one of the supported BIP39 strengths."""


class UnknownChainError(WalletError, KeyError):
    """The chain name does not match any supported chain."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else ""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class WalletNotFound(WalletError, KeyError):
    """No wallet file exists for the requested agent / wallet pair."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class InvalidWalletId(WalletError, ValueError):
    """An agent or wallet id would resolve outside the wallet directory."""


class IntegrityError(WalletError, ValueError):
    """A wallet file or imported record failed its integrity check."""


class InvalidBundleError(WalletError, ValueError):
    """An export bundle is malformed or missing required fields."""


class BundleDecryptionError(WalletError, ValueError):
    """An encrypted bundle could not be authenticated with the given password."""


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class NotConnectedError(WalletError, RuntimeError):
    """A provider data operation was called before ``connect()``."""


class AddressValidationError(WalletError, ValueError):
    """An address is not valid for the provider's chain."""


class TransactionBuildError(WalletError, ValueError):
    """A transaction request could not be turned into a chain transaction."""


class SigningError(WalletError, RuntimeError):
    """No signing secret is loaded, or the signer rejected the payload."""


class NetworkError(WalletError, ConnectionError):
    """Wraps any failure of the underlying network transport."""
