from .main import Main

__all__ = ["Main"]
