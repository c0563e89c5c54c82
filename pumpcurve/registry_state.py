"""
Protocol-wide registry: authority, treasury and fee parameters.
"""
from pumpcurve import curve_math


class RegistryState:
    """
    Singleton protocol configuration.

    Created once by the controller's initialize step and handed to every
    operation afterwards. Only the creation counter changes after that.
    """

    def __init__(self, data: dict = None):
        """
        Initialize registry state.

        Args:
            data: Dict with authority, treasury, fee parameters and counter
        """
        if data is None:
            data = {
                'authority': b'',
                'treasury': b'',
                'protocol_fee_bps': curve_math.PROTOCOL_FEE_BPS,
                'creation_fee': curve_math.CREATION_FEE,
                'total_tokens_created': 0,
            }

        self.authority = bytes(data['authority'])
        self.treasury = bytes(data['treasury'])
        self.protocol_fee_bps = int(data['protocol_fee_bps'])
        self.creation_fee = int(data['creation_fee'])
        self.total_tokens_created = int(data.get('total_tokens_created', 0))
        self._validate()

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'authority': self.authority,
            'treasury': self.treasury,
            'protocol_fee_bps': self.protocol_fee_bps,
            'creation_fee': self.creation_fee,
            'total_tokens_created': self.total_tokens_created,
        }

    def record_creation(self):
        """Bump the created-curve counter."""
        self.total_tokens_created = curve_math.check_u64(
            self.total_tokens_created + 1, "total_tokens_created")

    def __repr__(self) -> str:
        return (
            f"RegistryState("
            f"authority={self.authority.hex()}, "
            f"treasury={self.treasury.hex()}, "
            f"fee_bps={self.protocol_fee_bps}, "
            f"creation_fee={self.creation_fee}, "
            f"created={self.total_tokens_created})"
        )

    def _validate(self):
        """Ensure state consistency."""
        if not 0 <= self.protocol_fee_bps <= curve_math.BPS_DENOMINATOR:
            raise ValueError(f"Invalid fee bps: {self.protocol_fee_bps}")
        if self.creation_fee < 0 or self.total_tokens_created < 0:
            raise ValueError("Creation fee and counter cannot be negative")
