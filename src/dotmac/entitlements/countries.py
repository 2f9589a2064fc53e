"""
Billing country registry.

Plan codes carry a country prefix (``india_pro``, ``uk_starter``); plans also
store an explicit ``country_code`` which wins whenever it is set.
"""

from dataclasses import dataclass

GLOBAL_REGION = "GLOBAL"
GLOBAL_PLAN_PREFIX = "global_"


@dataclass(frozen=True)
class CountryProfile:
    """Per-country billing defaults."""

    code: str
    name: str
    plan_prefix: str
    currency: str


COUNTRY_PROFILES: dict[str, CountryProfile] = {
    "IN": CountryProfile("IN", "India", "india_", "INR"),
    "UK": CountryProfile("UK", "United Kingdom", "uk_", "GBP"),
    "AE": CountryProfile("AE", "United Arab Emirates", "ae_", "AED"),
    "SG": CountryProfile("SG", "Singapore", "sg_", "SGD"),
    "MY": CountryProfile("MY", "Malaysia", "my_", "MYR"),
    "US": CountryProfile("US", "United States", "us_", "USD"),
}

_ALIASES = {
    "GB": "UK",
    "INDIA": "IN",
    "UAE": "AE",
    "SINGAPORE": "SG",
    "MALAYSIA": "MY",
    "USA": "US",
}


def normalize_country_code(value: str) -> str:
    """Upper-case a country code and fold known aliases (GB -> UK)."""
    code = value.strip().upper()
    return _ALIASES.get(code, code)


def get_profile(country_code: str) -> CountryProfile | None:
    return COUNTRY_PROFILES.get(normalize_country_code(country_code))


def plan_prefix_for(country_code: str) -> str:
    profile = get_profile(country_code)
    return profile.plan_prefix if profile else GLOBAL_PLAN_PREFIX


def currency_for(country_code: str, default: str = "USD") -> str:
    profile = get_profile(country_code)
    return profile.currency if profile else default


def infer_plan_country(plan_code: str) -> str | None:
    """Derive a plan's region from its code prefix, for rows without country_code."""
    code = plan_code.lower()
    if code.startswith(GLOBAL_PLAN_PREFIX):
        return GLOBAL_REGION
    for profile in COUNTRY_PROFILES.values():
        if code.startswith(profile.plan_prefix):
            return profile.code
    return None


def plan_matches_country(plan_country: str | None, tenant_country: str) -> bool:
    """Global plans serve every country without a dedicated catalog."""
    if plan_country is None:
        return False
    tenant = normalize_country_code(tenant_country)
    if plan_country == GLOBAL_REGION:
        return tenant not in COUNTRY_PROFILES
    return normalize_country_code(plan_country) == tenant
