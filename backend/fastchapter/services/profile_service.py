"""User profile storage.

The profile holds the OpenAI credential and the auto-transcribe
preference. The credential never leaves this module unredacted except
through `read_private_profile`, which only backend services call.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from fastchapter.models import (
    PublicIntegrations,
    PublicProfile,
    UpdateProfileRequest,
    UserProfile,
)

from .project_service import ProjectService, read_json, write_json

logger = logging.getLogger(__name__)

PROFILE_FILE = "profile.json"


def to_public_profile(profile: UserProfile) -> PublicProfile:
    return PublicProfile(
        username=profile.username,
        display_name=profile.display_name,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
        integrations=PublicIntegrations(
            has_openai_api_key=bool(profile.integrations.openai_api_key),
            auto_transcribe=profile.integrations.auto_transcribe,
        ),
    )


class ProfileService:
    """Read and update users/<user>/profile.json."""

    def __init__(self, projects: ProjectService):
        self.projects = projects

    async def read_private_profile(self, username: str) -> UserProfile:
        """Load the profile, normalizing and rewriting it if missing or malformed."""
        username = await self.projects.ensure_user(username)
        profile_path = self.projects.user_root(username) / PROFILE_FILE
        now = datetime.now(timezone.utc)

        try:
            raw = await read_json(profile_path)
            profile = UserProfile.model_validate({**raw, "username": username})
            return profile
        except FileNotFoundError:
            pass
        except (OSError, ValueError, TypeError, PydanticValidationError) as e:
            logger.warning(f"Resetting malformed profile for {username}: {e}")

        profile = UserProfile(username=username, created_at=now, updated_at=now)
        await write_json(profile_path, profile.model_dump(mode="json"))
        return profile

    async def get_profile(self, username: str) -> PublicProfile:
        return to_public_profile(await self.read_private_profile(username))

    async def update_profile(self, username: str, request: UpdateProfileRequest) -> PublicProfile:
        profile = await self.read_private_profile(username)

        if request.display_name is not None:
            profile.display_name = request.display_name.strip()
        if request.openai_api_key is not None:
            profile.integrations.openai_api_key = request.openai_api_key.strip()
        if request.auto_transcribe is not None:
            profile.integrations.auto_transcribe = request.auto_transcribe
        profile.updated_at = datetime.now(timezone.utc)

        profile_path = self.projects.user_root(profile.username) / PROFILE_FILE
        await write_json(profile_path, profile.model_dump(mode="json"))
        return to_public_profile(profile)

    async def resolve_openai_api_key(self, username: str) -> Optional[str]:
        """Profile key first, then OPENAI_API_KEY. None when neither is set."""
        profile = await self.read_private_profile(username)
        api_key = profile.integrations.openai_api_key.strip() or os.environ.get("OPENAI_API_KEY", "").strip()
        return api_key or None
