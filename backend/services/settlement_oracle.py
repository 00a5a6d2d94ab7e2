"""
Factorly: On-chain Settlement Oracle Client
════════════════════════════════════════════
The invoice contract is the authority on what a buyer owes at settlement
(face value plus accrued interest or penalty). This module reads that figure
through a narrow interface so the settlement service never knows how it is
fetched.

  Adapter                     Used when
  ──────────────────────────  ─────────────────────────────────────
  HttpSettlementOracle        SETTLEMENT_ORACLE_URL is configured
  UnconfiguredOracle          no oracle URL; every read is "unavailable"
"""

import logging
from abc import ABC, abstractmethod

import httpx

from config import SETTLEMENT_ORACLE_URL, SETTLEMENT_ORACLE_TIMEOUT
from services.errors import SettlementOracleUnavailable, InvalidAmount
from services.money import Amount

logger = logging.getLogger("factorly.oracle")


class SettlementOracle(ABC):
    @abstractmethod
    def get_settlement_amount(self, invoice_ref: str) -> Amount:
        """Amount the buyer must pay to settle, or raise SettlementOracleUnavailable."""


class UnconfiguredOracle(SettlementOracle):
    def get_settlement_amount(self, invoice_ref: str) -> Amount:
        raise SettlementOracleUnavailable("Settlement oracle is not configured", invoice_ref=invoice_ref)


class HttpSettlementOracle(SettlementOracle):
    """
    GET {base_url}/invoices/{ref}/settlement-amount
      -> {"amount": "<integer stroops>"}
    """

    def __init__(self, base_url: str, timeout: float = SETTLEMENT_ORACLE_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_settlement_amount(self, invoice_ref: str) -> Amount:
        url = f"{self.base_url}/invoices/{invoice_ref}/settlement-amount"
        try:
            resp = httpx.get(url, timeout=self.timeout)
        except httpx.TimeoutException:
            raise SettlementOracleUnavailable("Settlement oracle timed out", invoice_ref=invoice_ref)
        except httpx.HTTPError as e:
            logger.error(f"Settlement oracle request failed for {invoice_ref}: {e}")
            raise SettlementOracleUnavailable("Settlement oracle request failed", invoice_ref=invoice_ref)

        if resp.status_code != 200:
            raise SettlementOracleUnavailable(
                f"Settlement oracle returned status {resp.status_code}",
                invoice_ref=invoice_ref, status_code=resp.status_code,
            )

        try:
            return Amount.parse(resp.json()["amount"])
        except (ValueError, KeyError, TypeError, InvalidAmount):
            logger.error(f"Settlement oracle returned an unreadable body for {invoice_ref}: {resp.text[:200]}")
            raise SettlementOracleUnavailable("Settlement oracle response was malformed", invoice_ref=invoice_ref)


def get_settlement_oracle() -> SettlementOracle:
    """FastAPI dependency; tests override it with a stub."""
    if SETTLEMENT_ORACLE_URL:
        return HttpSettlementOracle(SETTLEMENT_ORACLE_URL)
    return UnconfiguredOracle()
