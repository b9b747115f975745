"""
Reelsmith — Plan limits and credit costs
What each subscription tier may generate, and how many credits a run costs.
"""

ALL_LENGTHS = ["short", "brief", "presentation"]
ALL_FORMATS = ["landscape", "portrait", "square"]
UNLIMITED = 999999

PLAN_LIMITS = {
    "free": {
        "creditsPerMonth": 5,
        "allowedLengths": ["short"],
        "allowedFormats": ["landscape"],
        "infographicsPerMonth": 0,
        "voiceClones": 0,
        "allowBrandMark": False,
        "allowCustomStyle": False,
        "allowVoiceCloning": False,
    },
    "starter": {
        "creditsPerMonth": 30,
        "allowedLengths": ["short", "brief"],
        "allowedFormats": ALL_FORMATS,
        "infographicsPerMonth": 10,
        "voiceClones": 0,
        "allowBrandMark": False,
        "allowCustomStyle": False,
        "allowVoiceCloning": False,
    },
    "creator": {
        "creditsPerMonth": 100,
        "allowedLengths": ALL_LENGTHS,
        "allowedFormats": ALL_FORMATS,
        "infographicsPerMonth": 50,
        "voiceClones": 1,
        "allowBrandMark": True,
        "allowCustomStyle": True,
        "allowVoiceCloning": True,
    },
    "professional": {
        "creditsPerMonth": 300,
        "allowedLengths": ALL_LENGTHS,
        "allowedFormats": ALL_FORMATS,
        "infographicsPerMonth": UNLIMITED,
        "voiceClones": 3,
        "allowBrandMark": True,
        "allowCustomStyle": True,
        "allowVoiceCloning": True,
    },
    "enterprise": {
        "creditsPerMonth": UNLIMITED,
        "allowedLengths": ALL_LENGTHS,
        "allowedFormats": ALL_FORMATS,
        "infographicsPerMonth": UNLIMITED,
        "voiceClones": 999,
        "allowBrandMark": True,
        "allowCustomStyle": True,
        "allowVoiceCloning": True,
    },
}

CREDIT_COSTS = {
    "short": 1,
    "brief": 2,
    "presentation": 4,
    "smartflow": 1,
    "cinematic": 12,
}


def get_credits_required(project_type, length):
    if project_type == "smartflow":
        return CREDIT_COSTS["smartflow"]
    if project_type == "cinematic":
        return CREDIT_COSTS["cinematic"]
    return CREDIT_COSTS.get(length) or CREDIT_COSTS["short"]


def _denied(error, required_plan=None):
    result = {"canGenerate": False, "error": error, "upgradeRequired": True}
    if required_plan:
        result["requiredPlan"] = required_plan
    return result


def validate_generation_access(plan, credits_balance, project_type, length, fmt,
                               has_brand_mark=False, has_custom_style=False, subscription_status=None):
    """
    Check whether a plan may run a generation.

    Returns:
        {"canGenerate": True} or a dict with canGenerate False, error,
        upgradeRequired and (where one applies) requiredPlan
    """
    if subscription_status in ("past_due", "unpaid"):
        return _denied("Your subscription payment is overdue. "
                       "Please update your payment method to continue creating.")

    if subscription_status == "canceled" and plan != "free":
        return _denied("Your subscription has been canceled. Please resubscribe to continue creating.")

    limits = PLAN_LIMITS.get(plan) or PLAN_LIMITS["free"]
    required = get_credits_required(project_type, length)

    if credits_balance < required:
        return _denied(f"Insufficient credits. You need {required} credit(s) but have {credits_balance}. "
                       "Please add credits or upgrade your plan.")

    if length not in limits["allowedLengths"]:
        required_plan = "creator" if length == "presentation" else "starter"
        return _denied(f"{length[:1].upper()}{length[1:]} videos are not available on the {plan} plan. "
                       f"Upgrade to {required_plan} or higher.", required_plan)

    if fmt not in limits["allowedFormats"]:
        return _denied(f"{fmt[:1].upper()}{fmt[1:]} format is not available on the {plan} plan. "
                       "Upgrade to unlock all formats.", "starter")

    if has_brand_mark and not limits["allowBrandMark"]:
        return _denied("Brand mark feature requires Creator plan or higher.", "creator")

    if has_custom_style and not limits["allowCustomStyle"]:
        return _denied("Custom styles require Creator plan or higher.", "creator")

    if project_type == "smartflow" and limits["infographicsPerMonth"] == 0:
        return _denied("Infographics are not available on the Free plan. Upgrade to Starter or higher.", "starter")

    return {"canGenerate": True}
