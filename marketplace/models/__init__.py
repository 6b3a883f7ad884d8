# Re-export Beanie documents
from .user import User
