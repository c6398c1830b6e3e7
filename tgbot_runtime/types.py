"""
Pydantic models for the Telegram Bot Runtime.

Only the subset of Bot API records the runtime reads is modelled here;
unknown fields are ignored so newer API versions keep parsing.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ============================================================
#  Configuration
# ============================================================


class RetryConfig(BaseModel):
    """Backoff settings for transient polling failures."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000


class PollingConfig(BaseModel):
    """Long polling settings passed to ``getUpdates``."""

    timeout: int = 30
    limit: int = 100
    allowed_updates: list[str] | None = None
    retry: RetryConfig = Field(default_factory=RetryConfig)


class WebhookConfig(BaseModel):
    """Webhook registration settings passed to ``setWebhook``."""

    url: str
    secret_token: str | None = None
    allowed_updates: list[str] | None = None
    max_connections: int | None = None
    drop_pending_updates: bool = False


class BotConfig(BaseModel):
    """Configuration for a bot instance."""

    token: str
    base_url: str = "https://api.telegram.org"
    timeout: float = 30.0
    polling: PollingConfig = Field(default_factory=PollingConfig)
    webhook: WebhookConfig | None = None


# ============================================================
#  Entities
# ============================================================


class User(BaseModel):
    """A Telegram user or bot."""

    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None


class Chat(BaseModel):
    """A private chat, group, supergroup or channel."""

    id: int
    type: str
    title: str | None = None
    username: str | None = None
    first_name: str | None = None


class MessageEntity(BaseModel):
    """A special entity inside message text (command, mention, URL, ...)."""

    type: str
    offset: int
    length: int
    url: str | None = None
    user: User | None = None

    def extract(self, text: str) -> str:
        """Return the slice of ``text`` covered by this entity.

        Offsets are counted in UTF-16 code units, as the Bot API does.
        """
        encoded = text.encode("utf-16-le")
        start = self.offset * 2
        end = start + self.length * 2
        return encoded[start:end].decode("utf-16-le")


class Message(BaseModel):
    """A message, channel post or service message."""

    message_id: int
    date: int
    chat: Chat
    from_user: User | None = Field(None, alias="from")
    text: str | None = None
    caption: str | None = None
    entities: list[MessageEntity] | None = None
    caption_entities: list[MessageEntity] | None = None
    reply_to_message: Message | None = None
    contact: dict[str, Any] | None = None
    location: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class CallbackQuery(BaseModel):
    """Incoming callback query from an inline keyboard button."""

    id: str
    from_user: User = Field(alias="from")
    chat_instance: str = ""
    message: Message | None = None
    inline_message_id: str | None = None
    data: str | None = None

    model_config = {"populate_by_name": True}


class InlineQuery(BaseModel):
    """Incoming inline query."""

    id: str
    from_user: User = Field(alias="from")
    query: str = ""
    offset: str = ""

    model_config = {"populate_by_name": True}


class ChosenInlineResult(BaseModel):
    """Inline result chosen by a user."""

    result_id: str
    from_user: User = Field(alias="from")
    query: str = ""

    model_config = {"populate_by_name": True}


class ShippingQuery(BaseModel):
    """Incoming shipping query."""

    id: str
    from_user: User = Field(alias="from")
    invoice_payload: str = ""

    model_config = {"populate_by_name": True}


class PreCheckoutQuery(BaseModel):
    """Incoming pre-checkout query."""

    id: str
    from_user: User = Field(alias="from")
    currency: str = ""
    total_amount: int = 0
    invoice_payload: str = ""

    model_config = {"populate_by_name": True}


class Poll(BaseModel):
    """Poll state."""

    id: str
    question: str
    total_voter_count: int = 0
    is_closed: bool = False


class PollAnswer(BaseModel):
    """A user's answer in a non-anonymous poll."""

    poll_id: str
    user: User | None = None
    option_ids: list[int] = Field(default_factory=list)


class ChatMember(BaseModel):
    """Membership of a user in a chat."""

    status: str
    user: User


class ChatMemberUpdated(BaseModel):
    """Change of a chat member's status."""

    chat: Chat
    from_user: User = Field(alias="from")
    date: int
    old_chat_member: ChatMember
    new_chat_member: ChatMember

    model_config = {"populate_by_name": True}


class ChatJoinRequest(BaseModel):
    """A request to join a chat."""

    chat: Chat
    from_user: User = Field(alias="from")
    user_chat_id: int = 0
    date: int

    model_config = {"populate_by_name": True}


class MessageReactionUpdated(BaseModel):
    """A change of a reaction on a message."""

    chat: Chat
    message_id: int
    date: int
    user: User | None = None
    old_reaction: list[dict[str, Any]] = Field(default_factory=list)
    new_reaction: list[dict[str, Any]] = Field(default_factory=list)


class ResponseParameters(BaseModel):
    """Extra details attached to a failed Bot API response."""

    migrate_to_chat_id: int | None = None
    retry_after: int | None = None


# ============================================================
#  Updates
# ============================================================


class UpdateType(str, Enum):
    """Update kinds. Values match the payload field names on ``Update``."""

    MESSAGE = "message"
    EDITED_MESSAGE = "edited_message"
    CHANNEL_POST = "channel_post"
    EDITED_CHANNEL_POST = "edited_channel_post"
    INLINE_QUERY = "inline_query"
    CHOSEN_INLINE_RESULT = "chosen_inline_result"
    CALLBACK_QUERY = "callback_query"
    SHIPPING_QUERY = "shipping_query"
    PRE_CHECKOUT_QUERY = "pre_checkout_query"
    POLL = "poll"
    POLL_ANSWER = "poll_answer"
    MY_CHAT_MEMBER = "my_chat_member"
    CHAT_MEMBER = "chat_member"
    CHAT_JOIN_REQUEST = "chat_join_request"
    MESSAGE_REACTION = "message_reaction"
    UNKNOWN = "unknown"


class Update(BaseModel):
    """An incoming update. Exactly one payload field is set."""

    update_id: int
    message: Message | None = None
    edited_message: Message | None = None
    channel_post: Message | None = None
    edited_channel_post: Message | None = None
    inline_query: InlineQuery | None = None
    chosen_inline_result: ChosenInlineResult | None = None
    callback_query: CallbackQuery | None = None
    shipping_query: ShippingQuery | None = None
    pre_checkout_query: PreCheckoutQuery | None = None
    poll: Poll | None = None
    poll_answer: PollAnswer | None = None
    my_chat_member: ChatMemberUpdated | None = None
    chat_member: ChatMemberUpdated | None = None
    chat_join_request: ChatJoinRequest | None = None
    message_reaction: MessageReactionUpdated | None = None

    model_config = {"frozen": True}

    @property
    def type(self) -> UpdateType:
        """The kind of payload this update carries."""
        for kind in UpdateType:
            if kind is UpdateType.UNKNOWN:
                continue
            if getattr(self, kind.value) is not None:
                return kind
        return UpdateType.UNKNOWN

    @property
    def payload(self) -> BaseModel | None:
        if self.type is UpdateType.UNKNOWN:
            return None
        return getattr(self, self.type.value)


class WebhookInfo(BaseModel):
    """Current webhook status."""

    url: str = ""
    has_custom_certificate: bool = False
    pending_update_count: int = 0
    last_error_date: int | None = None
    last_error_message: str | None = None
    max_connections: int | None = None
    allowed_updates: list[str] | None = None
