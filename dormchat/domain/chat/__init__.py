"""Chat domain exports."""

from .conversations import ConversationListSynchronizer, filter_conversations, flag_product_deleted, list_conversations
from .exceptions import Blocked, BlockDirection, CannotMessageSelf, ChatError, NotAuthenticated, SendFailed, SendRejected, user_message
from .identity import ConversationResolver, SchemaCache, resolve_legacy_id, resolve_product_centric_id
from .read_state import decode_read_by
from .reconciler import MessageStreamReconciler, ReconcilerState
from .service import ChatClient, connect
from .unread import UnreadBadgeAggregator, count_unread_conversations

__all__ = [
	"Blocked",
	"BlockDirection",
	"CannotMessageSelf",
	"ChatClient",
	"ChatError",
	"ConversationListSynchronizer",
	"ConversationResolver",
	"MessageStreamReconciler",
	"NotAuthenticated",
	"ReconcilerState",
	"SchemaCache",
	"SendFailed",
	"SendRejected",
	"UnreadBadgeAggregator",
	"connect",
	"count_unread_conversations",
	"decode_read_by",
	"filter_conversations",
	"flag_product_deleted",
	"list_conversations",
	"resolve_legacy_id",
	"resolve_product_centric_id",
	"user_message",
]
