import re
from typing import Optional


class CPFValidator:
    """Brazilian CPF (national ID) validator with check-digit verification."""

    @staticmethod
    def normalize_cpf(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9]", "", raw)

    @staticmethod
    def check_digit(digits: str) -> int:
        # Weights run from len(digits) + 1 down to 2.
        weight = len(digits) + 1
        total = sum(int(ch) * (weight - i) for i, ch in enumerate(digits))
        rest = (total * 10) % 11
        return 0 if rest == 10 else rest

    @staticmethod
    def is_valid_cpf(cpf: Optional[str]) -> bool:
        s = CPFValidator.normalize_cpf(cpf)
        if len(s) != 11:
            return False
        # 000.000.000-00, 111.111.111-11, ... pass the checksum but are not issued
        if s == s[0] * 11:
            return False
        first = CPFValidator.check_digit(s[:9])
        if first != int(s[9]):
            return False
        return CPFValidator.check_digit(s[:10]) == int(s[10])


class EmailValidator:
    _PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        return (raw or "").strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(EmailValidator._PATTERN.match(email.strip()))


class TextValidator:
    """Basic text checks for names and free-text fields."""

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not text.strip()

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        if TextValidator.is_blank(name):
            return False
        return any(c.isalpha() for c in name)

    @staticmethod
    def validate_phone(phone: Optional[str]) -> bool:
        if TextValidator.is_blank(phone):
            return False
        digits = re.sub(r"[^0-9]", "", phone)
        return 8 <= len(digits) <= 15

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        return re.sub(r"<[^>]*>", "", text).strip()
