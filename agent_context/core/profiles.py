"""ProfileManager: resolves inbound senders to persistent profiles."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from ..types import (
    InboundEvent,
    PlatformIdentity,
    Profile,
    ProfileFact,
    ProfileResolution,
    ProfileRole,
)
from .math_utils import clamp
from .store import ProfileStorage

logger = logging.getLogger(__name__)


class ProfileManager:
    """Profile lifecycle and identity resolution.

    A sender is identified by ``(channel_type, channel_id, platform_id)``.
    The first time an identity is seen a ``stranger`` profile is created
    and the resolution reports ``is_new``.
    """

    def __init__(self, storage: ProfileStorage) -> None:
        self._storage = storage

    def get_by_id(self, profile_id: str) -> Profile | None:
        return self._storage.get_profile(profile_id)

    def get_by_identity(self, platform: str, channel_id: str, platform_user_id: str) -> Profile | None:
        return self._storage.find_profile_by_identity(platform, channel_id, platform_user_id)

    def resolve_from_event(self, event: InboundEvent, now: datetime | None = None) -> ProfileResolution:
        now = now or event.timestamp or datetime.now(timezone.utc)
        sender = event.sender

        if sender.profile_id:
            profile = self._storage.get_profile(sender.profile_id)
            if profile is not None:
                self._storage.touch_profile(profile.id, now)
                return ProfileResolution(profile=profile, is_new=False)
            logger.debug("Explicit profile %s not found, resolving by identity", sender.profile_id)

        profile = self._storage.find_profile_by_identity(
            event.channel_type, event.channel_id, sender.platform_id,
        )
        if profile is not None:
            self._storage.touch_profile(profile.id, now)
            return ProfileResolution(profile=profile, is_new=False)

        candidate = Profile(
            display_name=sender.display_name or f"User {sender.platform_id}",
            role=ProfileRole.STRANGER,
            first_seen=now,
            last_seen=now,
            total_interactions=1,
        )
        identity = PlatformIdentity(
            platform=event.channel_type,
            channel_id=event.channel_id,
            platform_user_id=sender.platform_id,
            platform_username=sender.display_name,
            linked_at=now,
        )
        profile, created = self._storage.create_profile_with_identity(candidate, identity)
        if created:
            logger.info("Created new profile: %s (%s)", profile.display_name, profile.id)
        else:
            # Lost a creation race; the identity already belongs to someone.
            self._storage.touch_profile(profile.id, now)
        return ProfileResolution(profile=profile, is_new=created)

    def link_identity(self, profile_id: str, identity: PlatformIdentity) -> bool:
        """Attach another platform identity. False if it is already linked."""
        return self._storage.link_identity(profile_id, identity)

    def add_fact(
        self,
        profile_id: str,
        content: str,
        category: str = "general",
        confidence: float = 0.5,
    ) -> ProfileFact:
        fact = ProfileFact(content=content, category=category, confidence=clamp(confidence))
        self._storage.add_profile_fact(profile_id, fact)
        return fact

    def set_role(self, profile_id: str, role: ProfileRole | str) -> bool:
        role = ProfileRole(role)
        updated = self._storage.update_profile_fields(profile_id, role=role)
        if updated:
            logger.info("Profile %s role set to %s", profile_id, role.value)
        return updated

    def set_display_name(self, profile_id: str, display_name: str) -> bool:
        return self._storage.update_profile_fields(profile_id, display_name=display_name)

    def set_communication_style(self, profile_id: str, style: str) -> bool:
        return self._storage.update_profile_fields(profile_id, communication_style=style)

    def is_blocked(self, profile_id: str) -> bool:
        profile = self._storage.get_profile(profile_id)
        return profile is not None and profile.role == ProfileRole.BLOCKED

    def is_trusted(self, profile_id: str) -> bool:
        profile = self._storage.get_profile(profile_id)
        return profile is not None and profile.role in (ProfileRole.OWNER, ProfileRole.TRUSTED)

    def list_profiles(self) -> list[Profile]:
        return self._storage.list_profiles()
