"""Static role to hourly rate table."""

from collections.abc import Mapping
from types import MappingProxyType

from cost_meter.errors import ValidationError

ROLE_RATES: Mapping[str, float] = MappingProxyType(
    {
        "Executive (C-Suite)": 250,
        "Director / VP": 175,
        "Senior Manager": 140,
        "Project Manager": 110,
        "Senior Software Engineer": 125,
        "Software Engineer": 90,
        "UX/UI Designer": 85,
        "Quality Assurance Analyst": 75,
        "Marketing Specialist": 70,
        "Intern / Junior Staff": 35,
    }
)

DEFAULT_ROLE = next(iter(ROLE_RATES))


def rate_for(role: str, table: Mapping[str, float] = ROLE_RATES) -> float:
    """Look up the hourly rate for a role."""
    if role not in table:
        valid = ", ".join(table)
        raise ValidationError(f"Unknown role '{role}'. Valid roles: [{valid}]")
    return float(table[role])
