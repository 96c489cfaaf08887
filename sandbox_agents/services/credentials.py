"""Credential provider backed by the encrypted store."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cryptography.fernet import InvalidToken
from sqlmodel import select

from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.database import get_session
from sandbox_agents.core.encryption import decrypt_secret, encrypt_secret
from sandbox_agents.core.errors import CredentialInvalid
from sandbox_agents.models import UserCredential, UserProfile

if TYPE_CHECKING:
    from sandbox_agents.services.agents import AgentVariant

logger = logging.getLogger(__name__)

# Agent keys may fall back to an operator-provided key.
_SYSTEM_FALLBACKS = {
    "anthropic": "system_anthropic_api_key",
    "openai": "system_openai_api_key",
    "gemini": "system_gemini_api_key",
    "cursor": "system_cursor_api_key",
}


@dataclass(frozen=True)
class GitIdentity:
    name: str
    email: str


@dataclass(frozen=True)
class Credentials:
    """Everything a run needs from the credential provider.

    Held in memory for the duration of one run only.
    """

    github_token: str
    identity: GitIdentity
    agent_env: dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Credentials(identity={self.identity!r}, agent_env={sorted(self.agent_env)})"


class CredentialService:
    """Per-user secrets and identity."""

    @staticmethod
    def store_credential(owner_id: str, provider: str, value: str) -> None:
        """Encrypt and store (or replace) a secret for one provider."""
        encrypted = encrypt_secret(value)
        with get_session() as session:
            statement = select(UserCredential).where(
                UserCredential.owner_id == owner_id,
                UserCredential.provider == provider,
            )
            credential = session.execute(statement).scalar_one_or_none()
            if credential is None:
                credential = UserCredential(owner_id=owner_id, provider=provider, encrypted_value=encrypted)
            else:
                credential.encrypted_value = encrypted
            session.add(credential)

    @staticmethod
    def get_secret(owner_id: str, provider: str) -> str | None:
        """Decrypt the stored secret, or None if the owner has none.

        Raises:
            CredentialInvalid: If the stored value cannot be decrypted
        """
        with get_session() as session:
            statement = select(UserCredential.encrypted_value).where(
                UserCredential.owner_id == owner_id,
                UserCredential.provider == provider,
            )
            encrypted = session.execute(statement).scalar_one_or_none()

        if encrypted is None:
            return None
        try:
            return decrypt_secret(encrypted)
        except (InvalidToken, ValueError) as e:
            raise CredentialInvalid(
                f"Stored {provider} credential for {owner_id} cannot be decrypted"
            ) from e

    @staticmethod
    def upsert_profile(
        owner_id: str,
        name: str | None = None,
        email: str | None = None,
        github_login: str | None = None,
    ) -> UserProfile:
        with get_session() as session:
            profile = session.get(UserProfile, owner_id) or UserProfile(id=owner_id)
            profile.name = name
            profile.email = email
            profile.github_login = github_login
            session.add(profile)
            session.commit()
            session.refresh(profile)
            return profile

    @staticmethod
    def get_identity(owner_id: str) -> GitIdentity:
        """Commit identity from the owner's profile."""
        with get_session() as session:
            profile = session.get(UserProfile, owner_id)

        login = (profile.github_login if profile else None) or owner_id
        name = (profile.name if profile else None) or login
        email = (profile.email if profile else None) or f"{login}@users.noreply.github.com"
        return GitIdentity(name=name, email=email)

    @staticmethod
    def resolve(
        owner_id: str, variant: "AgentVariant", config: Settings = settings
    ) -> Credentials:
        """Collect the source-control token, identity and agent keys for a run.

        The source-control token always comes from the owner; a missing one
        is an error rather than a fallback to a shared token.
        """
        github_token = CredentialService.get_secret(owner_id, "github")
        if not github_token:
            raise CredentialInvalid(f"Owner {owner_id} has no GitHub credential")

        agent_env = {}
        for env_name, provider in variant.credentials:
            if provider == "github":
                value = github_token
            else:
                value = CredentialService.get_secret(owner_id, provider)
                if not value and provider in _SYSTEM_FALLBACKS:
                    value = getattr(config, _SYSTEM_FALLBACKS[provider])
            if value:
                agent_env[env_name] = value

        return Credentials(
            github_token=github_token,
            identity=CredentialService.get_identity(owner_id),
            agent_env=agent_env,
        )
