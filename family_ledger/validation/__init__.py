"""Draft validation and confirmation."""

from family_ledger.validation.validator import DraftValidator, find_category, find_member

__all__ = ["DraftValidator", "find_category", "find_member"]
