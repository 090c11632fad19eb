from __future__ import annotations


NAME_SUFFIXES = {"jr", "jr.", "sr", "sr.", "ii", "iii", "iv", "v", "esq", "esq.", "phd", "md", "dds"}


def format_family_name(full_name: str | None) -> str:
    """Format a person's name as the family display name ``"Last, First"``.

    Names that already contain a comma are returned as-is, ``"X Family"``
    becomes ``"X"``, and a trailing suffix such as ``Jr.`` is kept after the
    first name (``"John Smith Jr."`` -> ``"Smith, John Jr."``).
    """
    if not full_name:
        return "Unknown"
    trimmed = full_name.strip()
    if not trimmed:
        return "Unknown"
    if "," in trimmed:
        return trimmed
    if trimmed.endswith(" Family"):
        return trimmed[: -len(" Family")].strip()

    parts = trimmed.split()
    if len(parts) == 1:
        return parts[0]

    suffix = ""
    if len(parts) > 2 and parts[-1].lower() in NAME_SUFFIXES:
        suffix = f" {parts.pop()}"

    last_name = parts.pop()
    first_name = " ".join(parts)
    return f"{last_name}, {first_name}{suffix}"


def has_first_and_last(full_name: str | None) -> bool:
    return bool(full_name) and " " in full_name.strip()
