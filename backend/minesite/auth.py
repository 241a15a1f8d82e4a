"""Request actor resolution supplied by the upstream authentication layer."""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import Header, HTTPException, status

# purpose: translate identity headers set by the authenticating gateway into an Actor
# inputs: X-Actor (operator email), X-Actor-Role, X-Actor-Sites (comma separated, "*" for all)
# outputs: Actor dataclass consumed by route dependencies
# status: production

KNOWN_ROLES = ("operator", "validator", "admin")


@dataclass(frozen=True)
class Actor:
    email: str
    role: str = "operator"
    sites: tuple[str, ...] = field(default=("*",))

    @property
    def all_sites(self) -> bool:
        return "*" in self.sites


def get_current_actor(
    x_actor: str | None = Header(default=None),
    x_actor_role: str = Header(default="operator"),
    x_actor_sites: str = Header(default="*"),
) -> Actor:
    email = (x_actor or "").strip()
    if not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing actor")
    role = x_actor_role.strip().lower()
    if role not in KNOWN_ROLES:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown role")
    sites = tuple(s.strip() for s in x_actor_sites.split(",") if s.strip()) or ("*",)
    return Actor(email=email, role=role, sites=sites)
