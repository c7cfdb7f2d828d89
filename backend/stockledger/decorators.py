# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

ACTOR_HEADER = "X-Actor-Id"


def require_actor(f):
    """
    Require a caller identity and stash it on g.actor_id.

    Authentication happens upstream; the gateway forwards the authenticated
    principal in the X-Actor-Id header. Internal tools without a gateway may
    send actor_id in the JSON body instead. The value is opaque here and is
    only recorded on ledger entries and sales.

    Returns 401 when neither is present.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not actor_id:
            payload = request.get_json(silent=True)
            if isinstance(payload, dict) and payload.get("actor_id") is not None:
                actor_id = str(payload["actor_id"]).strip()

        if not actor_id:
            return jsonify({"error": "Actor identity required"}), 401

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function
