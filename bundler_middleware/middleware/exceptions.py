from dataclasses import dataclass, field
from enum import Enum
import re

from bundler_middleware.typing import Address


class BundlerErrorCode(Enum):
    InvalidFields = -32602
    SimulateValidation = -32500
    SimulatePaymasterValidation = -32501
    OpcodeValidation = -32502
    ExpiresShortly = -32503
    Reputation = -32504
    InsufficientStake = -32505
    UnsupportedSignatureAggregator = -32506
    InvalidSignature = -32507
    PaymasterDepositTooLow = -32508
    UserOperationReverted = -32521


VALIDATION_ERROR_CODES = frozenset(
    code.value for code in BundlerErrorCode
    if code != BundlerErrorCode.UserOperationReverted
)

# EntryPoint revert reasons look like "AA25 invalid account nonce"
ENTRYPOINT_ERROR_PATTERN = re.compile(r"^AA\d\d\b")


@dataclass
class TransportError(Exception):
    message: str
    attempts: int = 0


@dataclass
class ProtocolError(Exception):
    message: str


@dataclass
class BundlerRpcError(ProtocolError):
    code: int
    data: object = None


@dataclass
class SimulationReverted(Exception):
    message: str
    data: object = None


@dataclass
class ValidationRejected(Exception):
    code: int
    message: str
    data: object = None

    @property
    def exception_code(self) -> BundlerErrorCode | None:
        try:
            return BundlerErrorCode(self.code)
        except ValueError:
            return None


@dataclass
class WalletNotDeployed(Exception):
    sender: Address
    message: str = "wallet is not deployed and no init code is configured"


@dataclass
class InvalidSignerConfiguration(Exception):
    message: str


@dataclass
class InvalidConfiguration(Exception):
    message: str


@dataclass
class EntryPointNotSupported(Exception):
    entrypoint: Address
    supported_entrypoints: list[Address] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"entrypoint {self.entrypoint} is not supported by the bundler, "
            f"supported: {self.supported_entrypoints}"
        )


@dataclass
class NonceInFlight(Exception):
    sender: Address
    nonce: int

    @property
    def message(self) -> str:
        return (
            f"an operation for {self.sender} with nonce {self.nonce} "
            "is already in flight"
        )


@dataclass
class ChainClientError(Exception):
    method: str
    message: str
    inner: BaseException | None = None


def classify_bundler_error(error: dict) -> Exception:
    """Map a JSON-RPC error object returned by a bundler to an exception.

    Execution reverts (-32521) become SimulationReverted, ERC-4337
    validation codes and "AAxx" EntryPoint reasons become
    ValidationRejected, anything else is a BundlerRpcError.
    """
    message = str(error.get("message", ""))
    data = error.get("data")
    code = error.get("code")
    if not isinstance(code, int):
        return ProtocolError(f"Invalid JSON-RPC error object: {error}")

    if code == BundlerErrorCode.UserOperationReverted.value:
        return SimulationReverted(message, data)
    if (
        code in VALIDATION_ERROR_CODES or
        ENTRYPOINT_ERROR_PATTERN.match(message) is not None
    ):
        return ValidationRejected(code, message, data)
    return BundlerRpcError(message, code, data)
