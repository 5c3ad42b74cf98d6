# /qfchat/store.py
# In-memory state for the chat service. ChatState owns the four stores for the
# process lifetime and reaches handlers through the get_state dependency.
# Sync handlers run on a threadpool, so each store guards its maps with a lock.

import itertools
import random
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

from qfchat.errors import (
    DuplicateUsernameError,
    InvalidCredentialsError,
    NotFoundError,
    QfNumberExhaustedError,
)
from qfchat.models import Chat, ContactEntry, ContactView, Message, User
from qfchat.utils import QF_NUMBER_MAX, QF_NUMBER_MIN, logger


def pair_key(user_a: str, user_b: str) -> Tuple[str, str]:
    """Canonical key of an unordered user pair."""
    low, high = sorted((user_a, user_b))
    return low, high


# -------------------- Identity --------------------
class IdentityStore:
    def __init__(self, qf_min: int = QF_NUMBER_MIN, qf_max: int = QF_NUMBER_MAX, rng=None):
        if qf_min < 1 or qf_max < qf_min:
            raise ValueError("QfChat number range must be positive and non-empty")
        self.qf_min = qf_min
        self.qf_max = qf_max
        self._rng = rng or random.Random()
        self._users: Dict[str, User] = {}
        self._by_username: Dict[str, str] = {}
        self._by_qf_number: Dict[int, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._users)

    def _allocate_qf_number(self) -> int:
        # Caller holds the lock.
        if len(self._by_qf_number) >= self.qf_max - self.qf_min + 1:
            raise QfNumberExhaustedError()
        while True:
            code = self._rng.randint(self.qf_min, self.qf_max)
            if code not in self._by_qf_number:
                return code

    def signup(self, username: str, password: str) -> User:
        with self._lock:
            if username in self._by_username:
                raise DuplicateUsernameError()

            user = User(
                id=str(uuid4()),
                username=username,
                password=password,
                qfNumber=self._allocate_qf_number(),
            )
            self._users[user.id] = user
            self._by_username[username] = user.id
            self._by_qf_number[user.qfNumber] = user.id
        return user

    def login(self, username: str, password: str) -> User:
        user_id = self._by_username.get(username)
        user = self._users.get(user_id) if user_id else None
        if user is None or user.password != password:
            raise InvalidCredentialsError()
        return user

    def get(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def find_by_qf_number(self, code: Union[int, str]) -> User:
        """
        Look a user up by QfChat number. Numeric strings match their int
        value; anything non-numeric is simply not found.
        """
        try:
            number = int(str(code).strip())
        except ValueError:
            raise NotFoundError("User not found")

        user_id = self._by_qf_number.get(number)
        if user_id is None:
            raise NotFoundError("User not found")
        return self._users[user_id]


# -------------------- Contacts --------------------
class ContactStore:
    def __init__(self, identity: IdentityStore):
        self.identity = identity
        self._books: Dict[str, Dict[str, ContactEntry]] = {}
        self._lock = threading.Lock()

    def init_owner(self, owner_id: str) -> None:
        with self._lock:
            self._books.setdefault(owner_id, {})

    def add_contact(self, owner_id: str, contact_id: str, nickname: str) -> ContactEntry:
        """
        Upsert (owner_id, contact_id). Neither id is validated; re-adding
        overwrites nickname and addedAt.
        """
        entry = ContactEntry(contactId=contact_id, nickname=nickname)
        with self._lock:
            self._books.setdefault(owner_id, {})[contact_id] = entry
        return entry

    def list_contacts(self, owner_id: str) -> List[ContactView]:
        with self._lock:
            entries = list(self._books.get(owner_id, {}).values())

        views = []
        for entry in entries:
            user = self.identity.get(entry.contactId)
            views.append(
                ContactView(
                    **entry.model_dump(),
                    username=user.username if user else "Unknown",
                    qfNumber=user.qfNumber if user else None,
                )
            )
        return views


# -------------------- Chats --------------------
class ChatRegistry:
    def __init__(self):
        self._chats: Dict[str, Chat] = {}
        self._dm_by_pair: Dict[Tuple[str, str], str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._chats)

    def find_or_create_dm(self, user_a: str, user_b: str) -> Chat:
        """
        Return the DM chat of the unordered pair, creating it on first use.
        Lookup and insert happen under one lock, so a pair never gets two chats.
        """
        key = pair_key(user_a, user_b)
        with self._lock:
            chat_id = self._dm_by_pair.get(key)
            if chat_id is not None:
                return self._chats[chat_id]

            chat = Chat(id=f"dm_{next(self._ids)}", type="dm", participants=[user_a, user_b])
            self._chats[chat.id] = chat
            self._dm_by_pair[key] = chat.id

        logger.info(f"Created DM {chat.id} for {user_a} and {user_b}")
        return chat

    def get(self, chat_id: str) -> Optional[Chat]:
        return self._chats.get(chat_id)

    def list_chats_for_user(self, user_id: str) -> List[Chat]:
        with self._lock:
            return [c for c in self._chats.values() if user_id in c.participants]


# -------------------- Messages --------------------
class MessageLog:
    def __init__(self):
        self._logs: Dict[str, List[Message]] = defaultdict(list)
        self._lock = threading.Lock()

    def append(self, chat_id: str, sender_id: str, sender_name: str, content: str) -> Message:
        msg = Message(
            id=str(uuid4()),
            chatId=chat_id,
            senderId=sender_id,
            senderName=sender_name,
            content=content,
        )
        with self._lock:
            self._logs[chat_id].append(msg)
        return msg

    def list_messages(self, chat_id: str) -> List[Message]:
        """Messages of a chat, oldest first. Unknown chats have none."""
        with self._lock:
            return list(self._logs.get(chat_id, ()))


# -------------------- State owner --------------------
class ChatState:
    def __init__(self, qf_min: int = QF_NUMBER_MIN, qf_max: int = QF_NUMBER_MAX, rng=None):
        self.identity = IdentityStore(qf_min=qf_min, qf_max=qf_max, rng=rng)
        self.contacts = ContactStore(self.identity)
        self.chats = ChatRegistry()
        self.messages = MessageLog()

    def signup(self, username: str, password: str) -> User:
        user = self.identity.signup(username, password)
        self.contacts.init_owner(user.id)
        return user


_state: Optional[ChatState] = None


def init_state() -> ChatState:
    """Create the process-wide state once."""
    global _state
    if _state is None:
        _state = ChatState()
    return _state


def get_state() -> ChatState:
    """FastAPI dependency returning the process-wide state."""
    return init_state()
