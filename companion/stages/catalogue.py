"""
Static description of the relationship journey: stage order, display names,
the requirement templates seeded when a stage begins, and the features each
stage unlocks.
"""

from dataclasses import dataclass

STAGE_ORDER = ("getting_to_know", "trial_period", "official_ceremony", "family_life")

STAGE_DISPLAY_NAMES = {
    "getting_to_know": "Getting Acquainted",
    "trial_period": "Building Trust",
    "official_ceremony": "Family Bond",
    "family_life": "Full Adoption",
}

METRICS = ("message_count", "active_days", "video_calls", "meetings")


@dataclass(frozen=True)
class RequirementTemplate:
    title: str
    description: str
    completion_mode: str = "counted"  # counted | sign_off
    metric: str | None = None
    required_value: int = 1


REQUIREMENT_TEMPLATES: dict[str, tuple[RequirementTemplate, ...]] = {
    "getting_to_know": (
        RequirementTemplate("Chat regularly", "Exchange 50 messages", metric="message_count", required_value=50),
        RequirementTemplate("Stay in touch", "Talk on 7 different days", metric="active_days", required_value=7),
        RequirementTemplate("Plan a meetup", "Agree together on a first meetup", completion_mode="sign_off"),
    ),
    "trial_period": (
        RequirementTemplate("Weekly video calls", "Hold 4 video calls", metric="video_calls", required_value=4),
        RequirementTemplate("Shared diary", "Start a shared diary together", completion_mode="sign_off"),
        RequirementTemplate("Trust exercises", "Complete a trust exercise together", completion_mode="sign_off"),
    ),
    "official_ceremony": (
        RequirementTemplate("Meet in person", "Have one offline meetup", metric="meetings", required_value=1),
        RequirementTemplate(
            "Keep calling", "Weekly video call for 3 weeks", metric="video_calls", required_value=3
        ),
        RequirementTemplate("Lend a hand", "Help with simple weekly tasks", completion_mode="sign_off"),
    ),
    "family_life": (
        RequirementTemplate("Family integration", "Join each other's family life", completion_mode="sign_off"),
        RequirementTemplate("Official ceremony", "Hold the official ceremony", completion_mode="sign_off"),
        RequirementTemplate("Certificate", "Receive your family certificate", completion_mode="sign_off"),
    ),
}

STAGE_PREVIEWS = {
    "getting_to_know": ["Unlimited text messaging", "Share photos", "Schedule meetups"],
    "trial_period": ["Weekly video calls", "Shared diary", "Trust-building exercises"],
    "official_ceremony": [
        "One offline meetup",
        "Weekly video call for 3 weeks",
        "Help with simple weekly tasks",
    ],
    "family_life": ["Full family integration", "Official ceremony", "Family certificate"],
}

# feature key -> (name, description, stage it unlocks at)
FEATURES = {
    "text": ("Text Messaging", "Unlimited messages", "getting_to_know"),
    "photo_share": ("Photo Sharing", "Share memories", "getting_to_know"),
    "video_call": ("Video Calls", "Up to 2 hours daily", "trial_period"),
    "diary": ("Shared Diary", "Document your journey", "trial_period"),
    "scheduling": ("Calendar Events", "Plan activities together", "trial_period"),
    "home_visits": ("Home Visits", "Visit each other at home", "official_ceremony"),
}

_LOCKED_MESSAGES = {
    "getting_to_know": {
        "trial_period": 'Complete "Getting Acquainted" stage to unlock Building Trust.',
        "official_ceremony": "Complete previous stages to unlock Family Bond.",
        "family_life": "Complete all previous stages to unlock Full Adoption.",
    },
    "trial_period": {
        "official_ceremony": 'Complete "Building Trust" stage to unlock Family Bond.',
        "family_life": "Complete previous stages to unlock Full Adoption.",
    },
    "official_ceremony": {
        "family_life": 'Complete "Family Bond" stage to unlock Full Adoption.',
    },
}


def stage_index(stage: str) -> int:
    try:
        return STAGE_ORDER.index(stage)
    except ValueError:
        raise ValueError(f"Unknown stage: {stage}") from None


def next_stage(stage: str) -> str | None:
    """None on the last stage."""
    i = stage_index(stage)
    return STAGE_ORDER[i + 1] if i + 1 < len(STAGE_ORDER) else None


def is_last_stage(stage: str) -> bool:
    return next_stage(stage) is None


def display_name(stage: str) -> str:
    return STAGE_DISPLAY_NAMES.get(stage, stage)


def locked_stage_message(target: str, current: str) -> str:
    return _LOCKED_MESSAGES.get(current, {}).get(target, "This stage is locked.")


def next_stage_preview(current: str) -> list[str]:
    nxt = next_stage(current)
    return list(STAGE_PREVIEWS[nxt]) if nxt else []


def stage_overview(current: str) -> list[dict]:
    current_index = stage_index(current)
    return [
        {
            "stage": stage,
            "display_name": STAGE_DISPLAY_NAMES[stage],
            "order": i + 1,
            "is_current": i == current_index,
            "is_completed": i < current_index,
            "locked_message": locked_stage_message(stage, current) if i > current_index else None,
        }
        for i, stage in enumerate(STAGE_ORDER)
    ]


def stage_features(current: str) -> list[dict]:
    current_index = stage_index(current)
    out = []
    for key, (name, description, unlock_stage) in FEATURES.items():
        unlocked = stage_index(unlock_stage) <= current_index
        out.append({
            "key": key,
            "name": name,
            "description": description,
            "is_unlocked": unlocked,
            "unlock_stage": unlock_stage,
            "unlock_message": None if unlocked else f"Unlocks at {display_name(unlock_stage)} stage",
        })
    return out
