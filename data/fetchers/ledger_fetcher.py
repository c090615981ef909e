"""
Loan amounts from the SRG crowdfunding contract (on-chain ledger).

Every funded inventory lot points at a crowdfunding campaign.  The amount
raised so far (``currentAmount``) is the loan that lot backs, so the CCR
calculator asks this module for it, one campaign at a time.

Amounts are fixed-point integers with IDR_DECIMALS (6) decimals, the same
scale as ether's "mwei" unit, so web3's unit helpers do the conversion.

Key concepts:
    - web3.py talks JSON-RPC to the configured chain (Alchemy endpoint)
    - contract.functions.getCampaign(id).call() is a free, read-only call
    - Only getCampaign is needed, so a minimal ABI is bundled; a full ABI
      file can be supplied via SRG_CROWDFUNDING_ABI_PATH
"""

import json
import logging

from web3 import Web3

from config import (
    SRG_CROWDFUNDING_CONTRACT, SRG_CROWDFUNDING_ABI_PATH, IDR_DECIMALS, get_network_url,
)

logger = logging.getLogger(__name__)

CAMPAIGN_STATUS = {
    0: "Active",
    1: "FundingFailed",
    2: "PendingSignOff",
    3: "LoanActive",
    4: "Repaid",
    5: "Defaulted",
    6: "Cancelled",
    7: "Completed",
}

# getCampaign() return tuple, in order
_CAMPAIGN_FIELDS = [
    ("srgTokenId", "uint256"),
    ("srgTokenContract", "address"),
    ("borrower", "address"),
    ("targetAmount", "uint256"),
    ("currentAmount", "uint256"),
    ("createdAt", "uint256"),
    ("fundingDeadline", "uint256"),
    ("interestRateBps", "uint256"),
    ("loanStartTime", "uint256"),
    ("maxPayoutDate", "uint256"),
    ("totalRepaymentAmount", "uint256"),
    ("status", "uint8"),
    ("originalSrgOwner", "address"),
    ("adminFeePercentage", "uint256"),
]

_GET_CAMPAIGN_ABI = [{
    "type": "function",
    "name": "getCampaign",
    "stateMutability": "view",
    "inputs": [{"name": "campaignId", "type": "uint256"}],
    "outputs": [{"name": name, "type": kind} for name, kind in _CAMPAIGN_FIELDS],
}]

# web3 unit name for 10**IDR_DECIMALS
_IDR_UNIT = {3: "kwei", 6: "mwei", 9: "gwei"}[IDR_DECIMALS]

_contract = None


def _load_abi() -> list:
    if not SRG_CROWDFUNDING_ABI_PATH:
        return _GET_CAMPAIGN_ABI
    with open(SRG_CROWDFUNDING_ABI_PATH, encoding="utf-8") as f:
        data = json.load(f)
    # Build artifacts wrap the ABI: {"abi": [...], "bytecode": ...}
    return data["abi"] if isinstance(data, dict) else data


def _get_contract():
    """Connect to the crowdfunding contract once and reuse it."""
    global _contract
    if _contract is None:
        if not SRG_CROWDFUNDING_CONTRACT:
            raise RuntimeError("SRG_CROWDFUNDING_CONTRACT environment variable is not set")
        w3 = Web3(Web3.HTTPProvider(get_network_url()))
        _contract = w3.eth.contract(
            address=Web3.to_checksum_address(SRG_CROWDFUNDING_CONTRACT),
            abi=_load_abi(),
        )
    return _contract


def parse_campaign(raw) -> dict:
    """Name the fields of a raw getCampaign() tuple."""
    campaign = {name: raw[i] if i < len(raw) else None
                for i, (name, _) in enumerate(_CAMPAIGN_FIELDS)}
    # Older deployments return 13 fields (no admin fee)
    if campaign["adminFeePercentage"] is None:
        campaign["adminFeePercentage"] = 0
    campaign["status"] = int(campaign["status"])
    campaign["statusName"] = CAMPAIGN_STATUS.get(campaign["status"], "Unknown")
    return campaign


def get_campaign(campaign_id: int) -> dict:
    """
    Read one campaign from the contract.

    Raises
    ------
    RuntimeError
        If no contract address is configured.
    Exception
        Whatever web3 raises for RPC / contract errors (logged first).
    """
    try:
        raw = _get_contract().functions.getCampaign(int(campaign_id)).call()
        return parse_campaign(raw)
    except Exception:
        logger.error("Error getting campaign %s", campaign_id, exc_info=True)
        raise


def format_idr(amount: int) -> str:
    """Fixed-point contract amount → decimal string, e.g. 1500000000 → "1500"."""
    return str(Web3.from_wei(int(amount), _IDR_UNIT))


def current_loan_amount(campaign_id: int) -> float:
    """Amount raised so far for a campaign, in IDR."""
    campaign = get_campaign(campaign_id)
    return float(format_idr(campaign["currentAmount"]))


# ── Quick self-test ─────────────────────────────────────────────────
if __name__ == "__main__":
    import sys
    from config import setup_logging
    setup_logging(log_dir=None)

    cid = int(sys.argv[1]) if len(sys.argv) > 1 else 1
    c = get_campaign(cid)
    logger.info("Campaign %d: %s, raised %s IDR of %s", cid, c["statusName"],
                format_idr(c["currentAmount"]), format_idr(c["targetAmount"]))
