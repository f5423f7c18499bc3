"""Socket.IO channel that pushes wallet and notification events to users."""

import logging
from datetime import datetime
from typing import Dict, Optional

from flask import current_app
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_socketio import SocketIO, join_room
from jwt.exceptions import PyJWTError

logger = logging.getLogger(__name__)

socketio = SocketIO()


def user_room(user_id) -> str:
    return f"user:{user_id}"


def _resolve_user_id(auth: Optional[Dict]) -> Optional[str]:
    token = (auth or {}).get("token") if isinstance(auth, dict) else None
    if not token:
        return None
    token = str(token)
    if token.lower().startswith("bearer "):
        token = token[7:]
    try:
        claims = decode_token(token)
    except (JWTExtendedException, PyJWTError) as exc:
        logger.info("Rejected socket connection: %s", exc)
        return None

    db = current_app.extensions["nextgen_db"]
    user = db.users.find_one({"email": claims.get("sub")}, {"_id": 1, "is_active": 1})
    if not user or user.get("is_active") is False:
        return None
    return str(user["_id"])


@socketio.on("connect")
def handle_connect(auth=None):
    user_id = _resolve_user_id(auth)
    if not user_id:
        return False
    join_room(user_room(user_id))
    logger.debug("Socket joined room %s", user_room(user_id))
    return True


def broadcast_balance_update(user_id, new_balance: float, change: float):
    socketio.emit(
        "balance_update",
        {
            "new_balance": new_balance,
            "change": change,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        },
        to=user_room(user_id),
    )


def broadcast_notification(user_id, notification: Dict):
    socketio.emit("notification", notification, to=user_room(user_id))
