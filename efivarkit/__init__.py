"""UEFI GUIDs, efivarfs variable storage, signature lists and GUID partition tables."""

__version__ = "0.1.0"

__all__ = ["errors", "guid", "esl", "efivarfs", "gpt_structs", "gpt"]