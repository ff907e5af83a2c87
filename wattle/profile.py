"""
User profile loading and prompt rendering.

The profile lives on the user document itself (``users/{uid}``).
"""
from typing import Any, Dict, Optional

from .store import DocumentStore

DIET_DESCRIPTIONS = {
    "whole-foods": "Mostly whole foods (fruits, vegetables, lean meats, whole grains) - nutrient-rich, balanced diet",
    "mixed": "Balanced mix of whole foods and some processed foods - moderate diet with room for improvement",
    "processed": "Mostly processed foods (fast food, sugary drinks, packaged snacks) - high in calories, sodium, and fats",
    "irregular": "Irregular eating (skipping meals, heavy snacking, little variety) - inconsistent nutrition with poor diversity",
    "vegetarian": "Vegetarian diet - excludes meat, may include dairy and eggs, high in plant nutrients",
    "vegan": "Vegan diet - excludes all animal products, focused entirely on plant-based nutrition",
    "keto": "Ketogenic diet - very low carbohydrate, high fat, moderate protein diet",
    "paleo": "Paleolithic diet - focuses on whole foods, avoids processed foods, grains, legumes, and dairy",
}

# (label, field, fallback)
PROFILE_FIELDS = [
    ("Age", "age", "Unknown"),
    ("Gender", "gender", "Unknown"),
    ("Height", "height", "Unknown"),
    ("Weight", "weight", "Unknown"),
    ("Diet Type", "dietType", "Unknown"),
    ("Activity Level", "activityLevel", "Unknown"),
    ("Medical Conditions", "medicalConditions", "None reported"),
    ("Medications", "medications", "None reported"),
    ("Allergies", "allergies", "None reported"),
    ("Sleep Hours", "sleepHours", "Unknown"),
    ("Stress Level", "stressLevel", "Unknown"),
    ("Smoking", "smokingStatus", "Not specified"),
    ("Alcohol", "alcoholConsumption", "Not specified"),
    ("Family History", "familyHistory", "Not specified"),
]


def user_path(uid: str) -> str:
    return f"users/{uid}"


def load_profile(store: DocumentStore, uid: str) -> Dict[str, Any]:
    return store.get(user_path(uid)) or {}


def diet_description(diet_type: Optional[str]) -> str:
    diet_type = (diet_type or "").strip()
    return DIET_DESCRIPTIONS.get(diet_type, diet_type or "Not specified")


def _render(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if v not in (None, ""))
    return str(value).strip()


def profile_text(profile: Optional[Dict[str, Any]]) -> str:
    profile = profile or {}
    lines = []
    for label, key, fallback in PROFILE_FIELDS:
        value = profile.get(key)
        if key == "dietType" and value:
            value = diet_description(value)
        rendered = _render(value) if value not in (None, "") else ""
        lines.append(f"{label}: {rendered or fallback}")
    return "\n".join(lines)
