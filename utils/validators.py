import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# Old NIC: 9 digits followed by V or X. New NIC: 12 digits.
_NIC_RE = re.compile(r"^(\d{9}[VX]|\d{12})$")


class ISBNValidator:
    """ISBN-10 and ISBN-13 normalization and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # weighted 10..1 checksum, 'X' only as the check digit
            total = 0
            for i, ch in enumerate(s[:-1]):
                if not ch.isdigit():
                    return False
                total += (10 - i) * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class NICValidator:
    """National identity code checks."""

    @staticmethod
    def normalize_nic(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"\s", "", raw).upper()

    @staticmethod
    def is_valid_nic(nic: Optional[str]) -> bool:
        return bool(_NIC_RE.match(NICValidator.normalize_nic(nic)))


class TextValidator:
    """Required-field checks for catalog and reader forms."""

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not text.strip()

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if TextValidator.is_blank(title):
            return False
        return any(c.isalpha() for c in title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if TextValidator.is_blank(author):
            return False
        return not author.strip().isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if TextValidator.is_blank(email):
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags
        return re.sub(r"<[^>]*>", "", text).strip()
