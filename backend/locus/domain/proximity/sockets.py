"""Socket.IO namespace delivering proximity alert matches to alert owners."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import socketio
from fastapi import HTTPException

from locus.infra.auth import AuthenticatedUser, verify_access_jwt
from locus.obs import metrics as obs_metrics
from locus.settings import settings

MATCH_EVENT = "proximity:match"

_namespace: Optional["AlertsNamespace"] = None


def _scope_headers(environ: Mapping[str, Any]) -> dict[str, str]:
	scope = environ.get("asgi.scope", environ)
	return {key.decode().lower(): value.decode() for key, value in scope.get("headers", [])}


def authenticate(environ: Mapping[str, Any], auth: Optional[Mapping[str, Any]]) -> AuthenticatedUser:
	"""Same rules as HTTP: bearer token everywhere, bare user id only in development."""
	auth = auth or {}
	headers = _scope_headers(environ)
	token = auth.get("token")
	if not token and headers.get("authorization", "").lower().startswith("bearer "):
		token = headers["authorization"].split(" ", 1)[1]
	if token:
		try:
			return verify_access_jwt(str(token))
		except HTTPException:
			raise ConnectionRefusedError("invalid_token") from None
	user_id = auth.get("userId") or headers.get("x-user-id")
	if settings.is_dev() and user_id:
		return AuthenticatedUser(id=str(user_id))
	raise ConnectionRefusedError("unauthorized")


class AlertsNamespace(socketio.AsyncNamespace):
	def __init__(self) -> None:
		super().__init__("/alerts")
		self._owners: dict[str, str] = {}

	@staticmethod
	def owner_room(user_id: str) -> str:
		return f"user:{user_id}"

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		user = authenticate(environ, auth)
		self._owners[sid] = user.id
		obs_metrics.socket_connected(self.namespace)
		await self.enter_room(sid, self.owner_room(user.id))
		await self.emit("alerts:ack", {"ok": True, "userId": user.id}, room=sid)

	async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
		owner_id = self._owners.pop(sid, None)
		if owner_id is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		await self.leave_room(sid, self.owner_room(owner_id))


def set_namespace(ns: Optional[AlertsNamespace]) -> None:
	global _namespace
	_namespace = ns


async def emit_proximity_match(owner_id: str, payload: dict) -> bool:
	"""Emit to the owner's room; False when no namespace is registered."""
	if _namespace is None:
		return False
	obs_metrics.socket_event(_namespace.namespace, MATCH_EVENT)
	await _namespace.emit(MATCH_EVENT, payload, room=AlertsNamespace.owner_room(owner_id))
	return True
