# /qfchat/routes/chat_routes.py
from fastapi import APIRouter, Depends

from qfchat.models import AddContactReq
from qfchat.store import ChatState, get_state
from qfchat.utils import logger

router = APIRouter(prefix="/api", tags=["chat"])


# ===== Contacts =====
@router.post("/add-contact")
def add_contact(req: AddContactReq, state: ChatState = Depends(get_state)):
    """
    Add or update a contact.
    An empty nickname falls back to the contact's username.
    """
    nickname = req.nickname
    if not nickname:
        contact = state.identity.get(req.contactId)
        nickname = contact.username if contact else "Unknown"

    state.contacts.add_contact(req.userId, req.contactId, nickname)
    logger.debug(f"{req.userId} saved contact {req.contactId} as '{nickname}'")
    return {"success": True}


@router.get("/contacts/{user_id}")
def list_contacts(user_id: str, state: ChatState = Depends(get_state)):
    return {"contacts": state.contacts.list_contacts(user_id)}


# ===== Chats & history =====
@router.get("/chats/{user_id}")
def list_chats(user_id: str, state: ChatState = Depends(get_state)):
    return {"chats": state.chats.list_chats_for_user(user_id)}


@router.get("/messages/{chat_id}")
def list_messages(chat_id: str, state: ChatState = Depends(get_state)):
    return {"messages": state.messages.list_messages(chat_id)}
