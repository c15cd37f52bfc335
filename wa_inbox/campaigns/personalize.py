"""Template variable resolution for campaign recipients."""

from __future__ import annotations

import re
from typing import Any

from ..conversations.schemas import Contact
from .schemas import Campaign, Template, VariableSource

_NUMERIC = re.compile(r"\{\{\s*(\d+)\s*\}\}")
_NAMED = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


def extract_variables(body: str, samples: dict[str, Any] | None = None) -> list[str]:
    """Return variable names in the order the provider numbers them.

    Named placeholders (``{{first_name}}``) are ordered by first occurrence.
    Numeric placeholders (``{{1}}``) are mapped onto the sample variable
    names in declaration order. Without placeholders the sample names are used.
    """

    samples = samples or {}
    sample_keys = list(samples)
    numeric = _NUMERIC.findall(body or "")
    if numeric:
        ordered = sorted({int(n) for n in numeric})
        return [
            sample_keys[n - 1] if 0 < n <= len(sample_keys) else str(n) for n in ordered
        ]
    seen: list[str] = []
    for name in _NAMED.findall(body or ""):
        if name not in seen:
            seen.append(name)
    return seen or sample_keys


def contact_values(contact: Contact) -> dict[str, str]:
    name = contact.name or "Customer"
    parts = (contact.name or "").split()
    custom = {k: str(v) for k, v in (contact.custom_fields or {}).items() if v not in (None, "")}
    company = (
        contact.company_name or custom.get("company_name") or custom.get("company") or ""
    )
    values = {
        **custom,
        "name": name,
        "first_name": contact.first_name or (parts[0] if parts else "Customer"),
        "last_name": contact.last_name or " ".join(parts[1:]),
        "email": contact.email or "",
        "phone": contact.phone_number,
        "phone_number": contact.phone_number,
        "company_name": company,
        "company": company,
    }
    return values


def resolve_values(campaign: Campaign, template: Template, contact: Contact) -> dict[str, str]:
    """Merge value sources by priority for one recipient.

    Contact mode: contact fields, then campaign variables, then template
    samples. Manual mode: campaign variables, then template samples, with the
    contact's name always available.
    """

    samples = {k: str(v) for k, v in (template.variables or {}).items()}
    campaign_vars = {
        k: str(v) for k, v in (campaign.template_variables or {}).items() if v not in (None, "")
    }
    if campaign.variable_source == VariableSource.CONTACT:
        merged = {**samples, **campaign_vars}
        merged.update({k: v for k, v in contact_values(contact).items() if v})
        return merged
    return {"name": contact.name or "Customer", **samples, **campaign_vars}


def personalize(campaign: Campaign, template: Template, contact: Contact) -> dict[str, str]:
    """Build provider content variables keyed by 1-based position."""

    values = resolve_values(campaign, template, contact)
    order = extract_variables(template.body, template.variables)
    return {str(index): values.get(name, "") for index, name in enumerate(order, start=1)}
