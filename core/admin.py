"""Administrative capability shared by every owner-gated operation.

Components never consult ambient owner state. Each one is built with the
:class:`AdminCapability` that may administer it, and every admin
mutation receives the caller's capability and passes it through
:func:`require_admin` before touching state.

Example:
    >>> from core.admin import AdminCapability, require_admin
    >>> owner = AdminCapability.issue("ops")
    >>> require_admin(expected=owner, presented=owner, action="setPaused")
    >>> stranger = AdminCapability.issue("ops")
    >>> require_admin(expected=owner, presented=stranger, action="setPaused")
    Traceback (most recent call last):
    ...
    core.errors.Unauthorized: setPaused requires the admin capability (holder=ops)
"""

import hmac
import logging
import secrets

from pydantic import BaseModel, ConfigDict, Field

from core.errors import Unauthorized

logger: logging.Logger = logging.getLogger(__name__)


class AdminCapability(BaseModel):
    """Unforgeable token granting administrative rights over a component.

    Two capabilities issued for the same ``holder`` are distinct: the
    random ``token`` is what is compared, not the holder name.

    Attributes:
        holder: Human-readable identity of the administrator.
        token: Random secret generated at issue time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    holder: str = Field(min_length=1, description="Administrator identity")
    token: str = Field(min_length=16, description="Random capability secret")

    @classmethod
    def issue(cls, holder: str) -> "AdminCapability":
        """Mint a fresh capability for ``holder``."""
        return cls(holder=holder, token=secrets.token_hex(16))

    def __repr__(self) -> str:
        return f"AdminCapability(holder={self.holder!r})"

    __str__ = __repr__


def require_admin(
    expected: AdminCapability,
    presented: AdminCapability | None,
    action: str,
) -> None:
    """Raise :class:`Unauthorized` unless ``presented`` matches ``expected``.

    Args:
        expected: The capability the component was constructed with.
        presented: The capability supplied by the caller.
        action: Operation name used in the log and error message.

    Raises:
        Unauthorized: If the capability is missing or does not match.
    """
    if presented is not None and hmac.compare_digest(
        presented.token,
        expected.token,
    ):
        return
    logger.warning(
        "Rejected %s: caller does not hold the admin capability",
        action,
    )
    raise Unauthorized(
        f"{action} requires the admin capability (holder={expected.holder})"
    )
