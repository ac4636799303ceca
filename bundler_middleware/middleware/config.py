from dataclasses import dataclass
from enum import Enum
import re

from bundler_middleware.middleware.exceptions import InvalidConfiguration
from bundler_middleware.typing import Address
from bundler_middleware.user_operation.user_operation import \
    DEFAULT_ENTRYPOINTS, EntryPointVersion, is_address

# well formed r, s, v that ECDSA.recover accepts during simulation
DUMMY_SIGNATURE = bytes.fromhex(
    "fffffffffffffffffffffffffffffff000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

DEFAULT_EXECUTE_FUNCTION = "execute(address,uint256,bytes)"


class SignatureScheme(Enum):
    eip191 = "eip191"
    raw = "raw"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class BundlerEndpoint:
    url: str
    entrypoint: Address
    entrypoint_version: EntryPointVersion

    def __post_init__(self) -> None:
        url_pattern = "^https?://[^\\s/$.?#][^\\s]*$"
        if not isinstance(self.url, str) or re.match(url_pattern, self.url) is None:
            raise InvalidConfiguration(f"Wrong bundler url format : {self.url}")
        if not is_address(self.entrypoint):
            raise InvalidConfiguration(
                f"Wrong entrypoint address format : {self.entrypoint}")
        if not isinstance(self.entrypoint_version, EntryPointVersion):
            raise InvalidConfiguration(
                f"Unknown entrypoint version : {self.entrypoint_version}")

    @classmethod
    def for_version(
        cls, url: str, entrypoint_version: EntryPointVersion
    ) -> "BundlerEndpoint":
        return cls(url, DEFAULT_ENTRYPOINTS[entrypoint_version],
                   entrypoint_version)


@dataclass(frozen=True)
class MiddlewareConfig:
    gas_margin_percentage: int = 10
    max_fee_per_gas_percentage_multiplier: int = 100
    max_priority_fee_per_gas_percentage_multiplier: int = 100
    is_legacy_mode: bool = False
    poll_interval: float = 5
    poll_timeout: float = 120
    signature_scheme: SignatureScheme = SignatureScheme.eip191
    dummy_signature: bytes = DUMMY_SIGNATURE
    execute_function: str = DEFAULT_EXECUTE_FUNCTION
    init_code: bytes | None = None
    retry_attempts: int = 3
    backoff_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.gas_margin_percentage < 0:
            raise InvalidConfiguration(
                "gas_margin_percentage can't be negative")
        if (
            self.max_fee_per_gas_percentage_multiplier <= 0 or
            self.max_priority_fee_per_gas_percentage_multiplier <= 0
        ):
            raise InvalidConfiguration(
                "fee percentage multipliers must be positive")
        if self.poll_interval <= 0 or self.poll_timeout <= 0:
            raise InvalidConfiguration(
                "poll_interval and poll_timeout must be positive")
        if self.init_code is not None and len(self.init_code) < 20:
            raise InvalidConfiguration(
                "init_code must start with the factory address")
        if self.retry_attempts < 1:
            raise InvalidConfiguration("retry_attempts must be at least 1")
