"""
Reads pump.fun bonding curve accounts straight from RPC
"""

import base64
from typing import Optional

from copytrader.clients.rpc_client import SolanaRpcClient
from copytrader.core.bonding_curve import (
    BondingCurveState,
    decode_bonding_curve,
    derive_bonding_curve_pda,
    parse_mint
)
from copytrader.core.logger import get_logger


logger = get_logger(__name__)


class PumpCurveReader:
    """CurveReader backed by getAccountInfo on the curve PDA"""

    def __init__(self, rpc: SolanaRpcClient):
        self.rpc = rpc

    async def get_curve_state(self, token_id: str) -> Optional[BondingCurveState]:
        """
        Current curve state, or None when the curve account does not exist

        Raises:
            InvalidTokenIdError: If token_id is not a valid mint
        """
        curve = derive_bonding_curve_pda(parse_mint(token_id))
        value = await self.rpc.get_account_info(str(curve))
        if not value:
            logger.debug("bonding_curve_not_found", token_id=token_id, curve=str(curve))
            return None

        data = value.get("data")
        if isinstance(data, list):
            data = data[0]
        return decode_bonding_curve(base64.b64decode(data))
