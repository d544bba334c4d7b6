"""App category resolution for installed-app catalog entries."""

from .models import AppCategory

# Well-known packages whose store category is missing or too generic.
PACKAGE_CATEGORY_OVERRIDES: dict[str, AppCategory] = {
    "com.google.android.youtube": AppCategory.VIDEO,
    "com.google.android.apps.youtube.kids": AppCategory.VIDEO,
    "com.netflix.mediaclient": AppCategory.VIDEO,
    "com.disney.disneyplus": AppCategory.VIDEO,
    "com.amazon.avod.thirdpartyclient": AppCategory.VIDEO,
    "com.roblox.client": AppCategory.GAMES,
    "com.mojang.minecraftpe": AppCategory.GAMES,
    "com.supercell.clashofclans": AppCategory.GAMES,
    "com.supercell.clashroyale": AppCategory.GAMES,
    "com.android.chrome": AppCategory.PRODUCTIVITY,
    "com.google.android.gm": AppCategory.COMMUNICATION,
    "com.google.android.apps.docs": AppCategory.PRODUCTIVITY,
    "com.google.android.apps.docs.editors.sheets": AppCategory.PRODUCTIVITY,
    "com.google.android.apps.docs.editors.slides": AppCategory.PRODUCTIVITY,
    "com.whatsapp": AppCategory.COMMUNICATION,
    "com.facebook.orca": AppCategory.COMMUNICATION,
    "com.discord": AppCategory.COMMUNICATION,
    "com.snapchat.android": AppCategory.SOCIAL,
    "com.instagram.android": AppCategory.SOCIAL,
    "com.facebook.katana": AppCategory.SOCIAL,
    "com.zhiliaoapp.musically": AppCategory.SOCIAL,
}


def resolve_app_category(category: str | None, package_name: str | None = None) -> AppCategory:
    """Resolve a reported category, falling back to known packages."""
    normalized = (category or "").strip().lower()
    try:
        base = AppCategory(normalized)
    except ValueError:
        base = AppCategory.OTHER

    if base != AppCategory.OTHER:
        return base

    normalized_package = (package_name or "").strip().lower()
    if not normalized_package:
        return base
    return PACKAGE_CATEGORY_OVERRIDES.get(normalized_package, base)
