"""
Exchange Configuration
======================
Deployment settings shared by the owner and the compute party. Both ends
must agree on scale factor, scheme parameters and header width out of band.
"""

from dataclasses import dataclass, asdict, replace
from decimal import Decimal


DEFAULT_POLY_MODULUS_DEGREE = 8192

# Largest 30-bit prime congruent to 1 mod 2*8192 (BFV batching prime)
DEFAULT_PLAIN_MODULUS = 1073692673


@dataclass(frozen=True)
class ExchangeConfig:
    """Configuration for one owner / compute-party deployment"""
    host: str = "127.0.0.1"
    port: int = 8080
    scale_factor: int = 100
    poly_modulus_degree: int = DEFAULT_POLY_MODULUS_DEGREE
    plain_modulus: int = DEFAULT_PLAIN_MODULUS
    header_size: int = 8  # bytes, unsigned big-endian
    max_frame_size: int = 256 * 1024 * 1024
    io_timeout: float = 30.0  # seconds, per frame read/write
    connect_timeout: float = 10.0
    max_sessions: int = 8
    savings_rate: Decimal = Decimal("0.15")
    monitor_port: int = 8000

    def __post_init__(self):
        if self.scale_factor <= 0:
            raise ValueError("scale_factor must be positive")
        degree = self.poly_modulus_degree
        if degree < 1024 or degree & (degree - 1):
            raise ValueError("poly_modulus_degree must be a power of two >= 1024")
        if self.plain_modulus % (2 * degree) != 1:
            raise ValueError("plain_modulus must be congruent to 1 mod 2*poly_modulus_degree")
        if self.header_size not in (4, 8):
            raise ValueError("header_size must be 4 or 8 bytes")
        if self.max_frame_size < 1:
            raise ValueError("max_frame_size must be at least 1 byte")
        if self.max_frame_size >= 1 << (8 * self.header_size):
            raise ValueError("max_frame_size does not fit in the length header")
        if self.io_timeout <= 0 or self.connect_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")

    @property
    def slot_count(self) -> int:
        return self.poly_modulus_degree

    def with_overrides(self, **overrides) -> 'ExchangeConfig':
        """Copy with the given fields replaced; ``None`` values are ignored"""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['savings_rate'] = str(self.savings_rate)
        return data
