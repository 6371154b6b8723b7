from .app import FieldCheckApp

__all__ = ["FieldCheckApp"]
