"""Compare declared enrollment data against what was read from the ID card.

Both checks are pure functions of their inputs. Any internal error yields a
conservative ``match=False`` with reason ``validation unavailable``.
"""

import re
from collections import Counter
from datetime import date, datetime
from typing import Mapping, Optional

from app.logging_config import get_logger
from app.schemas.enrollment import IneBackFields, IneFrontFields, ValidationResult
from app.services.ai_service import fold_accents
from app.services.enrollment_state import CanonicalField

logger = get_logger("validation_service")

VALIDATION_UNAVAILABLE = "validation unavailable"
MRZ_LINE_LENGTH = 30

REASON_NAME_UNREADABLE = "no se pudo leer el nombre en la INE"
REASON_NAME_MISMATCH = "el nombre de la INE no coincide con el nombre que registraste"
REASON_CURP_UNREADABLE = "no se pudo leer la CURP en la INE"
REASON_CURP_MISMATCH = "la CURP de la INE no coincide con la registrada"
REASON_BIRTH_UNREADABLE = "no se pudo leer la fecha de nacimiento en la INE"
REASON_BIRTH_MISMATCH = "la fecha de nacimiento de la INE no coincide con la registrada"
REASON_MRZ_UNREADABLE = "no se pudo leer la zona inferior del reverso"
REASON_MRZ_FORMAT = "la zona inferior del reverso no tiene el formato esperado"
REASON_MRZ_MISMATCH = "el nombre del reverso no coincide con el nombre que registraste"

_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y-%m-%d", "%d/%m/%y")


def name_tokens(value: Optional[str]) -> list[str]:
    """Uppercase, accent-free name tokens. MRZ fillers and punctuation split tokens."""
    if not value:
        return []
    folded = fold_accents(value).upper()
    return [t for t in re.split(r"[^A-Z]+", folded) if t]


def normalize_curp(value: Optional[str]) -> str:
    return re.sub(r"[^A-Z0-9]", "", fold_accents(value or "").upper())


def parse_birth_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    cleaned = re.sub(r"\s+", "", value)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def _names_match(declared: list[str], extracted: list[str], *, partial_read: bool) -> bool:
    remaining = Counter(declared)
    remaining.subtract(Counter(extracted))
    if any(count < 0 for count in remaining.values()):
        return False  # the card shows a name part the user never declared
    leftover = sum(remaining.values())
    return leftover == 0 or partial_read


def validate_front(declared: Mapping[str, str], extracted: IneFrontFields) -> ValidationResult:
    """Full name (any order), CURP and birth date must match the card front."""
    try:
        parts = [extracted.nombre, extracted.apellidoPaterno, extracted.apellidoMaterno]
        card_tokens = [t for part in parts for t in name_tokens(part)]
        if not card_tokens:
            return ValidationResult(match=False, reason=REASON_NAME_UNREADABLE)
        partial_read = any(not part for part in parts)
        declared_tokens = name_tokens(declared.get(CanonicalField.FULL_NAME.value))
        if not _names_match(declared_tokens, card_tokens, partial_read=partial_read):
            return ValidationResult(match=False, reason=REASON_NAME_MISMATCH)

        card_curp = normalize_curp(extracted.curp)
        if not card_curp:
            return ValidationResult(match=False, reason=REASON_CURP_UNREADABLE)
        if normalize_curp(declared.get(CanonicalField.CURP.value)) != card_curp:
            return ValidationResult(match=False, reason=REASON_CURP_MISMATCH)

        card_birth = parse_birth_date(extracted.fechaNacimiento)
        if card_birth is None:
            return ValidationResult(match=False, reason=REASON_BIRTH_UNREADABLE)
        if parse_birth_date(declared.get(CanonicalField.BIRTH_DATE.value)) != card_birth:
            return ValidationResult(match=False, reason=REASON_BIRTH_MISMATCH)

        return ValidationResult(match=True, reason="")
    except Exception:
        logger.exception("Front validation failed")
        return ValidationResult(match=False, reason=VALIDATION_UNAVAILABLE)


def _same_sequence(expected: list[str], actual: list[str], *, truncated: bool) -> bool:
    if len(expected) != len(actual):
        return False
    for i, (want, got) in enumerate(zip(expected, actual)):
        if want == got:
            continue
        # A full-length MRZ line cuts the last given name short.
        if truncated and i == len(actual) - 1 and want.startswith(got):
            continue
        return False
    return True


def split_mrz_name_line(line: str) -> Optional[tuple[list[str], list[str], bool]]:
    """Split ``SURNAME1<SURNAME2<<GIVEN<NAMES<<<`` into (surnames, given names, truncated)."""
    compact = re.sub(r"\s+", "", fold_accents(line).upper())
    truncated = len(compact) >= MRZ_LINE_LENGTH and not compact.endswith("<")
    body = compact.rstrip("<")
    if "<<" not in body:
        return None
    surname_part, given_part = body.split("<<", 1)
    surnames = [t for t in surname_part.split("<") if t]
    givens = [t for t in given_part.split("<") if t]
    if not surnames or not givens:
        return None
    if any(not re.fullmatch(r"[A-Z]+", t) for t in surnames + givens):
        return None
    return surnames, givens, truncated


def validate_back(declared: Mapping[str, str], extracted: IneBackFields) -> ValidationResult:
    """Line 3 of the machine-readable zone must read SURNAME1<SURNAME2<<GIVENNAME for the declared name."""
    try:
        if not extracted.linea3 or not extracted.linea3.strip():
            return ValidationResult(match=False, reason=REASON_MRZ_UNREADABLE)
        parsed = split_mrz_name_line(extracted.linea3)
        if parsed is None:
            return ValidationResult(match=False, reason=REASON_MRZ_FORMAT)
        surnames, givens, truncated = parsed

        declared_tokens = name_tokens(declared.get(CanonicalField.FULL_NAME.value))
        k = len(surnames)
        if len(declared_tokens) <= k:
            return ValidationResult(match=False, reason=REASON_MRZ_MISMATCH)

        given_first = declared_tokens[-k:] == surnames and _same_sequence(
            declared_tokens[:-k], givens, truncated=truncated
        )
        surname_first = declared_tokens[:k] == surnames and _same_sequence(
            declared_tokens[k:], givens, truncated=truncated
        )
        if not (given_first or surname_first):
            return ValidationResult(match=False, reason=REASON_MRZ_MISMATCH)
        return ValidationResult(match=True, reason="")
    except Exception:
        logger.exception("Back validation failed")
        return ValidationResult(match=False, reason=VALIDATION_UNAVAILABLE)
