"""Business code extraction.

Catalog codes ("ABC-123") identify the same release across sources, but
each source spells them differently: lower case, with or without the
hyphen, zero padded, behind a source prefix or a numeric label prefix.
extract_business_codes() expands one value into every spelling worth
querying.
"""

import re

# Optional numeric label, 2-10 letter series, optional separator, 2-6 digit number
CODE_RE = re.compile(r"(\d*)([A-Z]{2,10})[-_]?(\d{2,6})(?!\d)")


def extract_business_codes(value: str | None, source: str | None = None) -> list[str]:
    """
    Derive catalog code variants from a code or identifier.

    Examples:
        "abc-00123"          -> ["ABC-00123", "ABC00123", "ABC-123", "ABC123"]
        "425ABC-01902"       -> ["ABC-01902", "ABC01902", "ABC-1902", "ABC1902", "425ABC-01902"]
        "store-XYZ-015" with source "store" -> ["XYZ-015", "XYZ015"]

    Args:
        value: Business code, normalized ID or external ID
        source: Source name to strip when it prefixes the value

    Returns:
        Ordered, de-duplicated variants (empty if nothing looks like a code)
    """
    if not value:
        return []
    text = value.strip().upper()
    if source:
        prefix = source.strip().upper()
        for sep in ("-", "_", ":"):
            if text.startswith(prefix + sep):
                text = text[len(prefix) + 1 :]
                break

    variants: list[str] = []
    for match in CODE_RE.finditer(text):
        label, series, number = match.groups()
        variants.append(f"{series}-{number}")
        variants.append(f"{series}{number}")

        unpadded = str(int(number)).zfill(3)
        if unpadded != number:
            variants.append(f"{series}-{unpadded}")
            variants.append(f"{series}{unpadded}")
        if label:
            variants.append(f"{label}{series}-{number}")

    seen: set[str] = set()
    return [v for v in variants if not (v in seen or seen.add(v))]
