"""
Response schemas for the Electrum methods the gateway uses.

Validated at the client boundary so the sweeper never unpacks raw JSON.
Unknown fields are ignored.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ElectrumModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Balance(ElectrumModel):
    """blockchain.scripthash.get_balance"""

    confirmed: int = 0
    unconfirmed: int = 0


class HistoryEntry(ElectrumModel):
    """One item of blockchain.scripthash.get_history.

    height is 0 (or -1 with unconfirmed parents) for mempool transactions.
    """

    tx_hash: str
    height: int
    fee: Optional[int] = None


class Unspent(ElectrumModel):
    """One item of blockchain.scripthash.listunspent."""

    tx_hash: str = Field(..., min_length=64, max_length=64)
    tx_pos: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    height: int = 0


class HeaderTip(ElectrumModel):
    """blockchain.headers.subscribe"""

    height: int = Field(..., ge=0)
    hex: str = ""
