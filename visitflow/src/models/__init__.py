"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.profile import Profile
from src.models.property import Property
from src.models.lead import Lead
from src.models.conversation import Conversation
from src.models.message import Message
from src.models.visit import Visit

__all__ = [
    "Profile",
    "Property",
    "Lead",
    "Conversation",
    "Message",
    "Visit",
]
