"""In-memory profile/version registry used to resolve upstream targets."""

import logging
from typing import Dict, List, Mapping, Optional

from .config import Config, ProfileConfig
from .errors import InvalidProfileConfigError, ProfileNotFoundError

logger = logging.getLogger(__name__)


class ProfileRegistry:
    """Read-only map of (profile, version) -> ProfileConfig.

    Built once at startup and shared by every request; nothing mutates it
    afterwards, so lookups need no locking.
    """

    def __init__(self, profiles: Mapping[str, Mapping[str, ProfileConfig]]):
        self._profiles: Dict[str, Dict[str, ProfileConfig]] = {
            profile: dict(versions) for profile, versions in profiles.items()
        }

    @classmethod
    def from_config(cls, config: Config) -> "ProfileRegistry":
        return cls(config.profiles)

    def resolve(self, profile: str, version: str) -> Optional[ProfileConfig]:
        """Return the config for a (profile, version) pair, or None."""
        return self._profiles.get(profile, {}).get(version)

    @staticmethod
    def validate(config: Optional[ProfileConfig]) -> bool:
        """Check that base_url and api_key are non-blank strings."""
        if config is None:
            return False
        return (
            isinstance(config.base_url, str)
            and isinstance(config.api_key, str)
            and config.base_url.strip() != ""
            and config.api_key.strip() != ""
        )

    def require(self, profile: str, version: str) -> ProfileConfig:
        """Resolve and validate, raising the classified error on failure."""
        config = self.resolve(profile, version)
        if config is None:
            raise ProfileNotFoundError(profile, version)
        if not self.validate(config):
            logger.error(
                "Invalid configuration for profile=%s version=%s", profile, version
            )
            raise InvalidProfileConfigError(profile, version)
        return config

    def get_profiles(self) -> List[str]:
        return list(self._profiles.keys())

    def get_versions(self, profile: str) -> List[str]:
        return list(self._profiles.get(profile, {}).keys())

    def __len__(self) -> int:
        return len(self._profiles)
