from flask import g, has_app_context, has_request_context, request


SYSTEM_ACTOR = "system"
DEADLINE_JOB_ACTOR = "system:deadline_job"


def normalize_actor(value: str | None) -> str | None:
    actor = str(value or "").strip()
    return actor or None


def current_actor() -> str:
    """Opaque acting-user id: the X-User-Id header, then ``g.actor_id``, else ``system``."""
    if has_request_context():
        header_actor = normalize_actor(request.headers.get("X-User-Id"))
        if header_actor:
            return header_actor
    if has_app_context():
        return normalize_actor(getattr(g, "actor_id", None)) or SYSTEM_ACTOR
    return SYSTEM_ACTOR


def scoped_actor(value: str | None = None) -> str:
    return normalize_actor(value) or current_actor()
