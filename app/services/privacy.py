"""
Midnight Protocol — Field-level sharing policy for agent conversations.

A speaking agent always sees its own user's full story.  What it learns about
the counterpart is limited to the fields that counterpart marked shareable.
By default the structured fields are shareable and the free-text narrative
is private; ``PersonalStory.sharing_preferences`` overrides per field.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.services.compatibility_service import ParticipantProfile

SHAREABLE_FIELDS: tuple[str, ...] = (
    "narrative",
    "current_focus",
    "seeking_connections",
    "offering_expertise",
)

DEFAULT_SHARING: dict[str, bool] = {
    "narrative": False,
    "current_focus": True,
    "seeking_connections": True,
    "offering_expertise": True,
}


@dataclass(frozen=True)
class SharedView:
    """What one agent may present about its user to the other side."""

    handle: str
    agent_name: str
    narrative: str | None
    current_focus: tuple[str, ...]
    seeking_connections: tuple[str, ...]
    offering_expertise: tuple[str, ...]


def is_shareable(profile: ParticipantProfile, field_name: str) -> bool:
    if field_name not in DEFAULT_SHARING:
        raise ValueError(f"Unknown story field: {field_name!r}")
    preference = profile.sharing_preferences.get(field_name)
    if isinstance(preference, bool):
        return preference
    return DEFAULT_SHARING[field_name]


def full_view(profile: ParticipantProfile) -> SharedView:
    return SharedView(
        handle=profile.handle,
        agent_name=profile.agent_name,
        narrative=profile.narrative or None,
        current_focus=profile.current_focus,
        seeking_connections=profile.seeking_connections,
        offering_expertise=profile.offering_expertise,
    )


def shareable_view(profile: ParticipantProfile) -> SharedView:
    """The counterpart-facing projection of ``profile``."""
    return SharedView(
        handle=profile.handle,
        agent_name=profile.agent_name,
        narrative=(profile.narrative or None) if is_shareable(profile, "narrative") else None,
        current_focus=profile.current_focus if is_shareable(profile, "current_focus") else (),
        seeking_connections=(
            profile.seeking_connections if is_shareable(profile, "seeking_connections") else ()
        ),
        offering_expertise=(
            profile.offering_expertise if is_shareable(profile, "offering_expertise") else ()
        ),
    )


def render_view(view: SharedView) -> str:
    """Plain-text block for prompts; withheld fields are omitted entirely."""
    lines = [f"Handle: @{view.handle}"]
    if view.narrative:
        lines.append(f"Story: {view.narrative}")
    if view.current_focus:
        lines.append("Current focus: " + ", ".join(view.current_focus))
    if view.seeking_connections:
        lines.append("Seeking: " + ", ".join(view.seeking_connections))
    if view.offering_expertise:
        lines.append("Offering: " + ", ".join(view.offering_expertise))
    return "\n".join(lines)
