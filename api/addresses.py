"""Business address helpers: split/join the free-text address and pull a state code out of it."""
import re
from typing import Dict, Optional

# ---- state extraction (best effort over a free-text blob)
_STATE_COMMA_ZIP_RE = re.compile(r",\s*([A-Z]{2})\s*\d{5}(?:-\d{4})?\s*$")
_STATE_ZIP_RE       = re.compile(r"\b([A-Z]{2})\s*\d{5}(?:-\d{4})?\s*$")
_LAST_STATE_TOKEN_RE = re.compile(r"\b([A-Z]{2})\b(?!.*\b[A-Z]{2}\b)")

# "City ST 12345" when the city was not comma-separated from the state
_CITY_STATE_ZIP_RE = re.compile(r"^(.*?)\s+([A-Z]{2})(?:\s+(\d{5}(?:-\d{4})?))?$")


def extract_state(address: Optional[str]) -> Optional[str]:
    """
    Return the 2-letter state code of an address, or None.
    Tried in order:
      1) ", XX 12345[-1234]" at the end
      2) "XX 12345[-1234]" at the end
      3) the last standalone uppercase 2-letter token
    """
    if not address or not str(address).strip():
        return None
    raw = str(address).strip()
    upper = raw.upper()
    m = _STATE_COMMA_ZIP_RE.search(upper) or _STATE_ZIP_RE.search(upper)
    if m:
        return m.group(1)
    # the fallback looks at the text as typed so "Main St" is not read as a state
    m = _LAST_STATE_TOKEN_RE.search(raw)
    return m.group(1) if m else None


def _split_state_zip(value: str) -> Dict[str, str]:
    tokens = value.split()
    if not tokens:
        return {"state": "", "zip": ""}
    return {"state": tokens[0], "zip": " ".join(tokens[1:])}


def parse_business_address(address: Optional[str]) -> Dict[str, str]:
    """Split "street, [more street,] city, ST zip" into its parts. Missing parts come back as ''."""
    out = {"street": "", "city": "", "state": "", "zip": ""}
    parts = [p.strip() for p in (address or "").strip().split(",") if p.strip()]
    if not parts:
        return out
    if len(parts) == 1:
        out["street"] = parts[0]
        return out
    if len(parts) == 2:
        out["street"] = parts[0]
        m = _CITY_STATE_ZIP_RE.match(parts[1])
        if m and m.group(1):
            out.update(city=m.group(1).strip(), state=m.group(2), zip=m.group(3) or "")
        else:
            out["city"] = parts[1]
        return out

    out["street"] = ", ".join(parts[:-2])
    out["city"] = parts[-2]
    out.update(_split_state_zip(parts[-1]))
    return out


def format_business_address(parts: Dict[str, Optional[str]]) -> str:
    street = (parts.get("street") or "").strip()
    city = (parts.get("city") or "").strip()
    state = (parts.get("state") or "").strip()
    zip_code = (parts.get("zip") or "").strip()

    line_two = city
    if state:
        line_two = f"{line_two}, {state}" if line_two else state
    if zip_code:
        line_two = f"{line_two} {zip_code}" if line_two else zip_code

    return ", ".join(p for p in (street, line_two) if p)
