import re

# targets that never lead to a fetchable page
SCRIPT_SCHEMES = re.compile(r"^\s*(javascript|vbscript):", re.IGNORECASE)


def is_followable_href(href: str | None) -> bool:
    """Whether a raw link target is worth resolving at all."""
    if href is None:
        return False

    if not href.strip():
        return False

    if SCRIPT_SCHEMES.match(href):
        return False

    return True
