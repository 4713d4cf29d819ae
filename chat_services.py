"""The service objects built by create_app() and the operations that span several of them."""

import logging
from dataclasses import dataclass

from flask import current_app, request

from blocks import BlockList
from broadcaster import RealtimeBroadcaster
from chat_db import bool_setting, get_db
from chat_errors import ServiceUnavailable
from conversations import ConversationGateway
from presence import PresenceRegistry
from session_gate import SessionGate
from uploads import remove_upload

logger = logging.getLogger(__name__)


@dataclass
class Services:
    broadcaster: RealtimeBroadcaster
    presence: PresenceRegistry
    gate: SessionGate
    gateway: ConversationGateway
    blocks: BlockList

    def broadcast_stats(self):
        self.broadcaster.broadcast_global("stats-update", self.gateway.stats())

    def delete_user(self, user_id: int, upload_folder: str):
        """Delete an account and tell everyone who shared a conversation with it.

        Owned channels go first so their members see the usual deleted event.
        """
        for cid in self.gateway.owned_conversation_ids(user_id):
            for name in self.gateway.force_delete_conversation(cid)["attachments"]:
                remove_upload(upload_folder, name)
        result = self.gate.delete_account(user_id)
        for name in result["attachments"]:
            remove_upload(upload_folder, name)
        sid = self.presence.connection_for(user_id)
        if sid:
            self.presence.disconnect(sid)
        self.broadcaster.disconnect_user(user_id)
        self.broadcaster.notify_users(
            result["peers"], "chats:updated", {"reason": "account-deleted", "userId": user_id}
        )
        self.broadcast_stats()


def current_services() -> Services:
    return current_app.extensions["novachat"]


def request_data() -> dict:
    """JSON body when there is one, form fields otherwise."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def require_writable():
    """Refuse writes while MAINTENANCE_MODE is switched on."""
    if bool_setting(get_db(), "MAINTENANCE_MODE"):
        raise ServiceUnavailable()
