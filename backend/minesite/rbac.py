from __future__ import annotations

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from . import models
from .auth import Actor, get_current_actor

# purpose: centralize role and site-scope checks for site administration routes
# status: production


_ROLE_LEVELS: dict[str, int] = {
    "operator": 10,
    "validator": 50,
    "admin": 100,
}


def check_role(actor: Actor, minimum: str) -> None:
    if _ROLE_LEVELS.get(actor.role, 0) < _ROLE_LEVELS[minimum]:
        raise HTTPException(status_code=403, detail=f"{minimum} role required")


def require_validator(actor: Actor = Depends(get_current_actor)) -> Actor:
    check_role(actor, "validator")
    return actor


def check_site_access(actor: Actor, site: str) -> None:
    if actor.all_sites or site in actor.sites:
        return
    raise HTTPException(status_code=403, detail="Not authorized for site")


def resolve_site(db: Session, actor: Actor, site: str) -> models.Site:
    """Resolve a site name to its store row after checking the actor's scope."""

    name = (site or "").strip()
    if not name or name == "*":
        raise HTTPException(status_code=400, detail="site required")
    check_site_access(actor, name)
    row = db.query(models.Site).filter(models.Site.name == name).first()
    if not row:
        raise HTTPException(status_code=404, detail="unknown site")
    return row
