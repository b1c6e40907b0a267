"""Resolve a verified federated identity to a local account.

Linking trusts the identity provider's verified email as the joining key: a
Google login whose verified email matches an existing password account is
attached to that account rather than creating a second one. This assumes the
provider only marks addresses it has actually verified, which holds for Google
but would not hold for an arbitrary OpenID issuer.
"""

from __future__ import annotations

from sessionvault.logging import get_logger
from sessionvault.service.stores import UserDirectory
from sessionvault.storage.errors import UniqueConstraintViolation
from sessionvault.storage.models import AuthProvider, FederatedClaims, Identity

logger = get_logger(__name__)

DEFAULT_FEDERATED_NAME = "User"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class FederationLinker:
    def __init__(
        self, directory: UserDirectory, *, provider: AuthProvider = AuthProvider.GOOGLE
    ) -> None:
        self.directory = directory
        self.provider = provider

    def resolve_or_create(self, claims: FederatedClaims) -> Identity:
        email = normalize_email(claims.email)
        identity = self.directory.get_user_by_email(email)
        if identity is None:
            try:
                identity = self.directory.create_user(
                    email,
                    claims.name or DEFAULT_FEDERATED_NAME,
                    auth_provider=self.provider,
                    federated_subject_id=claims.subject,
                    avatar_url=claims.picture,
                )
            except UniqueConstraintViolation:
                # lost a create race with a concurrent login for the same email
                identity = self.directory.get_user_by_email(email)
                if identity is None:
                    raise
                return self._link(identity, claims)
            logger.info(
                "federated_identity_created",
                user_id=identity.id,
                provider=self.provider.value,
            )
            return identity
        return self._link(identity, claims)

    def _link(self, identity: Identity, claims: FederatedClaims) -> Identity:
        if identity.federated_subject_id:
            if identity.federated_subject_id != claims.subject:
                logger.warning(
                    "federated_subject_mismatch",
                    user_id=identity.id,
                    provider=self.provider.value,
                )
            return identity
        linked = self.directory.update_federation_link(
            identity.id, claims.subject, self.provider
        )
        logger.info(
            "federation_linked_existing_account",
            user_id=identity.id,
            provider=self.provider.value,
            had_password=identity.has_password,
        )
        return linked or identity


__all__ = ["FederationLinker", "normalize_email", "DEFAULT_FEDERATED_NAME"]
