"""
Pump.fun bonding curve state
Decodes the on-chain curve account and derives spot price and graduation progress
"""

import struct
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

from copytrader.core.errors import InvalidTokenIdError


PUMP_FUN_PROGRAM = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
BONDING_CURVE_SEED = b"bonding-curve"

LAMPORTS_PER_SOL = 1_000_000_000
TOKEN_DECIMALS = 6

# Real token reserves of a freshly created curve (base units); progress is measured against it
INITIAL_REAL_TOKEN_RESERVES = 793_100_000_000_000

# discriminator(8) + 5 x u64 + complete(1)
_DISCRIMINATOR_LEN = 8
_MIN_ACCOUNT_LEN = _DISCRIMINATOR_LEN + 5 * 8 + 1


@dataclass
class BondingCurveState:
    """Bonding curve account state

    Token values are base units (6 decimals), SOL values are lamports.
    """
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool

    @property
    def price_sol(self) -> Optional[float]:
        """SOL per whole token, None when reserves are empty"""
        if self.virtual_token_reserves <= 0 or self.virtual_sol_reserves <= 0:
            return None
        sol = self.virtual_sol_reserves / LAMPORTS_PER_SOL
        tokens = self.virtual_token_reserves / 10 ** TOKEN_DECIMALS
        return sol / tokens

    @property
    def progress(self) -> float:
        """Fraction of sellable supply already bought, clamped to [0, 1]"""
        if self.complete:
            return 1.0
        sold = 1 - self.real_token_reserves / INITIAL_REAL_TOKEN_RESERVES
        return min(1.0, max(0.0, sold))


def parse_mint(token_id: str) -> Pubkey:
    """
    Parse a token id into a mint pubkey

    Raises:
        InvalidTokenIdError: If the id is not a base58 32-byte key
    """
    if not isinstance(token_id, str) or not token_id.strip():
        raise InvalidTokenIdError(f"Invalid token id: {token_id!r}")
    try:
        return Pubkey.from_string(token_id.strip())
    except ValueError as e:
        raise InvalidTokenIdError(f"Invalid token id: {token_id!r}") from e


def derive_bonding_curve_pda(mint: Pubkey) -> Pubkey:
    """Bonding curve account address for a mint"""
    pda, _bump = Pubkey.find_program_address(
        [BONDING_CURVE_SEED, bytes(mint)],
        PUMP_FUN_PROGRAM
    )
    return pda


def decode_bonding_curve(data: bytes) -> BondingCurveState:
    """
    Decode raw curve account data

    Layout: [discriminator(8), virtual_token_reserves(8), virtual_sol_reserves(8),
             real_token_reserves(8), real_sol_reserves(8), token_total_supply(8), complete(1), ...]

    Raises:
        ValueError: If the account is too short to hold a curve
    """
    if len(data) < _MIN_ACCOUNT_LEN:
        raise ValueError(f"Bonding curve data too short: {len(data)} bytes")

    (
        virtual_token_reserves,
        virtual_sol_reserves,
        real_token_reserves,
        real_sol_reserves,
        token_total_supply,
    ) = struct.unpack_from("<5Q", data, _DISCRIMINATOR_LEN)

    return BondingCurveState(
        virtual_token_reserves=virtual_token_reserves,
        virtual_sol_reserves=virtual_sol_reserves,
        real_token_reserves=real_token_reserves,
        real_sol_reserves=real_sol_reserves,
        token_total_supply=token_total_supply,
        complete=bool(data[_DISCRIMINATOR_LEN + 5 * 8])
    )
