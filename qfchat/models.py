# /qfchat/models.py
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from qfchat.utils import utcnow


class QfModel(BaseModel):
    # Clients may send numeric user/chat ids; they are stored as strings.
    model_config = ConfigDict(coerce_numbers_to_str=True)


# -------------------- Records --------------------
class User(QfModel):
    id: str
    username: str
    password: str  # plaintext, compared by exact match
    qfNumber: int
    createdAt: datetime = Field(default_factory=utcnow)

    def public(self) -> "PublicUser":
        return PublicUser(id=self.id, username=self.username, qfNumber=self.qfNumber)


class PublicUser(QfModel):
    id: str
    username: str
    qfNumber: int


class ContactEntry(QfModel):
    contactId: str
    nickname: str
    addedAt: datetime = Field(default_factory=utcnow)


class ContactView(ContactEntry):
    """
    Contact entry joined with the contact's live user record.
    Unresolved ids render as username "Unknown" and qfNumber None.
    """

    username: str
    qfNumber: Optional[int] = None


class Chat(QfModel):
    id: str
    type: str = "dm"
    participants: List[str]
    createdAt: datetime = Field(default_factory=utcnow)


class Message(QfModel):
    """
    A chat message. ``senderName`` is the sender's username at send time
    and is not rewritten afterwards.
    """

    id: str
    chatId: str
    senderId: str
    senderName: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


# -------------------- Request models --------------------
class SignupReq(QfModel):
    username: str
    password: str


class LoginReq(QfModel):
    username: str
    password: str


class SearchUserReq(QfModel):
    qfNumber: Union[int, str]


class AddContactReq(QfModel):
    userId: str
    contactId: str
    nickname: Optional[str] = None


# -------------------- Realtime payloads --------------------
class JoinChatEvent(QfModel):
    chatId: str


class SendMessageEvent(QfModel):
    chatId: str
    senderId: str
    senderName: str
    content: str


class CreateDMEvent(QfModel):
    userId: str
    contactId: str
