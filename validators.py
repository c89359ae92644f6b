from typing import Any, Iterable, Optional

from errors import ValidationError


class StockValidator:
    """Checks for stock counts supplied by librarians."""

    @staticmethod
    def parse_stock(raw: Any, field: str = "stock") -> int:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be an integer.")
        if isinstance(raw, float) and not raw.is_integer():
            raise ValidationError(f"{field} must be an integer.")
        if value < 0:
            raise ValidationError(f"{field} cannot be negative.")
        return value


class LoanValidator:

    @staticmethod
    def parse_duration(raw: Any, allowed: Iterable[int]) -> int:
        allowed = tuple(allowed)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValidationError("loanDuration must be a number of days.")
        if value not in allowed:
            options = ", ".join(str(d) for d in allowed)
            raise ValidationError(f"loanDuration must be one of: {options}.")
        return value

    @staticmethod
    def require_id(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required.")
        return str(value).strip()


class RatingValidator:
    """Ratings are whole stars from 1 to 5."""

    MIN_RATING = 1
    MAX_RATING = 5

    @staticmethod
    def parse_rating(raw: Any) -> int:
        if isinstance(raw, bool):
            raise ValidationError("Rating must be between 1 and 5")
        if isinstance(raw, float):
            if not raw.is_integer():
                raise ValidationError("Rating must be a whole number between 1 and 5")
            raw = int(raw)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValidationError("Rating must be between 1 and 5")
        if value < RatingValidator.MIN_RATING or value > RatingValidator.MAX_RATING:
            raise ValidationError("Rating must be between 1 and 5")
        return value


class TextValidator:

    @staticmethod
    def require_text(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required.")
        return str(value).strip()

    @staticmethod
    def optional_text(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None


class PageValidator:

    @staticmethod
    def parse_page(page: Any, limit: Any, max_limit: int) -> tuple:
        try:
            page = int(page)
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("page and limit must be integers.")
        if page < 1:
            raise ValidationError("page must be at least 1.")
        if limit < 1 or limit > max_limit:
            raise ValidationError(f"limit must be between 1 and {max_limit}.")
        return page, limit
