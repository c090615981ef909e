"""
Unit-rate conversion from native exchange units to IDR per kilogram.

Coffee futures are quoted in their native exchange units (cents/lb for
Arabica on ICE US, USD/tonne for Robusta on ICE Europe).  The lending
side values collateral in IDR/kg, so every stored record also carries
IDR-denominated fields computed with a single multiplier:

    idr_value = native_value * unit_rate(commodity, usd_idr)

Conversion factors:
    Arabica:  cents/lb → IDR/kg   = (usd_idr / 100) * (1 / 0.453592)
    Robusta:  USD/tonne → IDR/kg  = usd_idr / 1000

The constants below must stay exactly as they are — historical records
were converted with them and the series has to stay comparable.
"""

TONNE_TO_KG = 1000          # 1 metric tonne = 1000 kg
LB_TO_KG = 1 / 0.453592     # pounds per kilogram (1 lb = 0.453592 kg)
CENTS_PER_DOLLAR = 100

# ---------------------------------------------------------------------------
# Each entry turns a USD→IDR rate into the multiplier for that commodity
# ---------------------------------------------------------------------------
_UNIT_RATE = {
    # cents/lb: drop the cents, then scale per-pound to per-kilogram
    "ARABICA": lambda usd_idr: usd_idr / CENTS_PER_DOLLAR * LB_TO_KG,

    # USD/tonne: per-tonne to per-kilogram
    "ROBUSTA": lambda usd_idr: usd_idr / TONNE_TO_KG,
}

_NATIVE_LABELS = {
    "ARABICA": "¢/lb",
    "ROBUSTA": "USD/Tonne",
}


def unit_rate(commodity: str, usd_idr: float) -> float:
    """
    Multiplier that converts a native-unit price into IDR/kg.

    Parameters
    ----------
    commodity : str
        "ARABICA" or "ROBUSTA".
    usd_idr : float
        USD→IDR exchange rate.

    Raises
    ------
    KeyError
        For a commodity without a conversion rule.
    """
    return _UNIT_RATE[commodity](usd_idr)


def to_idr(value: float | None, commodity: str, usd_idr: float) -> float | None:
    """Convert one native-unit value to IDR/kg (None stays None)."""
    if value is None:
        return None
    return value * unit_rate(commodity, usd_idr)


def native_label(commodity: str) -> str:
    """Return the native exchange unit label for a commodity."""
    return _NATIVE_LABELS.get(commodity, "")
