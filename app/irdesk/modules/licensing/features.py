"""
License tiers, the feature matrix, and default quota limits.

Pure data plus lookups; nothing here touches the database.
"""

from __future__ import annotations

LICENSE_TYPES = ("starter", "professional", "enterprise")
DEFAULT_LICENSE = "starter"

FEATURE_NAMES = (
    # core
    "incidents",
    "assets",
    "runbooks",
    "communications",
    "exercises",
    # advanced
    "customDomains",
    "whitelabeling",
    "apiAccess",
    "ssoAuthentication",
    "advancedReporting",
    "bulkOperations",
    "automatedWorkflows",
    # integrations
    "webhooks",
    "thirdPartyIntegrations",
    "customFields",
    # collaboration
    "realTimeCollaboration",
    "teamManagement",
    "roleBasedAccess",
    # compliance
    "auditLogs",
    "complianceReporting",
    "dataRetention",
)

_STARTER_ON = {"incidents", "assets", "runbooks", "communications", "teamManagement", "roleBasedAccess", "auditLogs"}
_PROFESSIONAL_ON = _STARTER_ON | {
    "exercises",
    "apiAccess",
    "advancedReporting",
    "bulkOperations",
    "automatedWorkflows",
    "webhooks",
    "thirdPartyIntegrations",
    "customFields",
    "realTimeCollaboration",
    "complianceReporting",
    "dataRetention",
}
_ENTERPRISE_ON = set(FEATURE_NAMES)

FEATURES_BY_LICENSE: dict[str, dict[str, bool]] = {
    "starter": {f: f in _STARTER_ON for f in FEATURE_NAMES},
    "professional": {f: f in _PROFESSIONAL_ON for f in FEATURE_NAMES},
    "enterprise": {f: f in _ENTERPRISE_ON for f in FEATURE_NAMES},
}

# None = unlimited
DEFAULT_LIMITS: dict[str, dict[str, int | None]] = {
    "starter": {
        "max_users": 5,
        "max_incidents": 100,
        "max_assets": 500,
        "max_runbooks": 50,
        "max_templates": 100,
        "max_storage_mb": 1024,
        "api_rate_limit": 1000,
    },
    "professional": {
        "max_users": 25,
        "max_incidents": 1000,
        "max_assets": 5000,
        "max_runbooks": 500,
        "max_templates": 1000,
        "max_storage_mb": 10240,
        "api_rate_limit": 10000,
    },
    "enterprise": {
        "max_users": 100,
        "max_incidents": None,
        "max_assets": None,
        "max_runbooks": None,
        "max_templates": None,
        "max_storage_mb": 102400,
        "api_rate_limit": 100000,
    },
}


def normalize_license(license_type: str | None) -> str:
    lt = (license_type or "").strip().lower()
    return lt if lt in FEATURES_BY_LICENSE else DEFAULT_LICENSE


def get_features_for_license(license_type: str | None) -> dict[str, bool]:
    """Feature flags for a tier; unknown tiers get the starter set."""
    return dict(FEATURES_BY_LICENSE[normalize_license(license_type)])


def get_default_limits(license_type: str | None) -> dict[str, int | None]:
    return dict(DEFAULT_LIMITS[normalize_license(license_type)])


def is_feature_available(feature: str, license_type: str | None) -> bool:
    return bool(get_features_for_license(license_type).get(feature, False))


def get_required_license_for_feature(feature: str) -> str | None:
    """Lowest tier that unlocks ``feature``."""
    for lt in LICENSE_TYPES:
        if FEATURES_BY_LICENSE[lt].get(feature):
            return lt
    return None


def unavailable_features(license_type: str | None) -> list[dict]:
    current = get_features_for_license(license_type)
    return [
        {"feature": f, "requiredLicense": get_required_license_for_feature(f)}
        for f in FEATURE_NAMES
        if not current.get(f)
    ]


def upgrade_path(feature: str, current_license: str | None) -> dict:
    target = get_required_license_for_feature(feature)
    current = normalize_license(current_license)
    return {"target": target, "url": f"/pricing?upgrade={feature}&from={current}&to={target}"}


def upgrade_recommendation(license_type: str | None, attempted_features: list[str] | None = None) -> dict:
    current = normalize_license(license_type)
    if current == "starter":
        recommended = "professional"
    else:
        recommended = "enterprise"
    attempted = set(attempted_features or [])
    current_features = FEATURES_BY_LICENSE[current]
    benefits = [f for f, on in FEATURES_BY_LICENSE[recommended].items() if on and not current_features[f]]
    return {
        "recommendedTier": recommended,
        "benefits": benefits,
        "blockedFeatures": [f for f in benefits if f in attempted],
    }
