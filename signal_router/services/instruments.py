# signal_router/services/instruments.py
"""Ticker to Dhan security id lookup."""
import logging
from typing import Dict, Iterable, Optional, Protocol

import pandas as pd

logger = logging.getLogger(__name__)


class InstrumentResolver(Protocol):
    def resolve_security_id(self, ticker: str) -> Optional[str]: ...


class StaticInstrumentResolver:
    def __init__(self, mapping: Dict[str, str]):
        self._mapping = {k.strip().upper(): str(v).strip() for k, v in mapping.items()}

    @classmethod
    def from_string(cls, raw: str) -> "StaticInstrumentResolver":
        """Parse ``"RELIANCE=2885,TCS=11536"``."""
        mapping = {}
        for part in raw.split(","):
            if "=" in part:
                ticker, security_id = part.split("=", 1)
                if ticker.strip() and security_id.strip():
                    mapping[ticker] = security_id
        return cls(mapping)

    def resolve_security_id(self, ticker: str) -> Optional[str]:
        return self._mapping.get(ticker.strip().upper())

    def __len__(self):
        return len(self._mapping)


class ScripMasterResolver(StaticInstrumentResolver):
    """NSE equity symbols from Dhan's detailed scrip master CSV."""

    @classmethod
    def from_csv(cls, source) -> "ScripMasterResolver":
        df = pd.read_csv(source, dtype=str, low_memory=False)
        df.columns = [c.strip().upper() for c in df.columns]
        required = {"EXCH_ID", "SEGMENT", "INSTRUMENT", "SECURITY_ID"}
        missing = required - set(df.columns)
        if missing:
            raise ValueError(f"scrip master is missing columns: {', '.join(sorted(missing))}")

        equities = df[
            (df["EXCH_ID"].str.strip() == "NSE")
            & (df["SEGMENT"].str.strip() == "E")
            & (df["INSTRUMENT"].str.strip() == "EQUITY")
        ]
        mapping = {}
        for column in ("SYMBOL_NAME", "UNDERLYING_SYMBOL"):
            if column not in equities.columns:
                continue
            pairs = equities[[column, "SECURITY_ID"]].dropna()
            for symbol, security_id in pairs.itertuples(index=False):
                mapping.setdefault(symbol.strip().upper(), security_id.strip())
        logger.info("Loaded %d NSE equity instruments", len(mapping))
        return cls(mapping)


class ChainedInstrumentResolver:
    def __init__(self, resolvers: Iterable[InstrumentResolver]):
        self._resolvers = list(resolvers)

    def resolve_security_id(self, ticker: str) -> Optional[str]:
        for resolver in self._resolvers:
            security_id = resolver.resolve_security_id(ticker)
            if security_id:
                return security_id
        return None
