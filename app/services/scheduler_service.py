import os
import re
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.enrollment import ScheduleResult
from app.services.ai_service import generate_json, normalize_for_matching

logger = get_logger("scheduler_service")

SCHEDULE_TIMEZONE = os.environ.get("SCHEDULE_TIMEZONE", "America/Chihuahua")
try:
    LOCAL_TZ = ZoneInfo(SCHEDULE_TIMEZONE)
except ZoneInfoNotFoundError:
    LOCAL_TZ = ZoneInfo("UTC")

DATETIME_FORMAT = "%d/%m/%Y %H:%M"

# weekday -> (opens, closes)
BUSINESS_HOURS = {
    0: (time(8, 0), time(19, 30)),
    1: (time(8, 0), time(19, 30)),
    2: (time(8, 0), time(19, 30)),
    3: (time(8, 0), time(19, 30)),
    4: (time(8, 0), time(19, 30)),
    5: (time(8, 0), time(14, 0)),
    6: (time(9, 0), time(13, 0)),
}
BUSINESS_HOURS_TEXT = (
    "Lunes a Viernes de 8:00 a 19:30\n"
    "Sábados de 8:00 a 14:00\n"
    "Domingos de 9:00 a 13:00"
)

WEEKDAYS = {
    "lunes": 0,
    "martes": 1,
    "miercoles": 2,
    "jueves": 3,
    "viernes": 4,
    "sabado": 5,
    "domingo": 6,
}
WEEKDAY_NAMES = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]
MONTH_NAMES = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

_AM_RE = re.compile(r"\b(a\.?\s?m\.?|de la manana|de la madrugada)(?=\W|$)")
_PM_RE = re.compile(r"\b(p\.?\s?m\.?|de la tarde|de la noche)(?=\W|$)")
_EXPLICIT_DATE_RE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2}|\d{4}))?\b")
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\b")
_AT_HOUR_RE = re.compile(r"\ba (?:las|la) (\d{1,2})(?:\s*(?:y media))?\b")
_BARE_MERIDIEM_RE = re.compile(r"\b(\d{1,2})\s*(?:a\.?\s?m\.?|p\.?\s?m\.?)(?=\W|$)")

SCHEDULE_PROMPT = """Dada la fecha y hora actual: "{now}", convierte la siguiente solicitud del usuario a un formato de fecha y hora estructurado. La solicitud es: "{request}".
Responde únicamente con un objeto JSON: {{"dateTime": "DD/MM/YYYY HH:mm"}}.
Ejemplos:
- "mañana a las 9:30" -> {{"dateTime": "11/06/2025 09:30"}} (si hoy es 10/06/2025)
- "el jueves a las 9" -> {{"dateTime": "12/06/2025 09:00"}} (si hoy es martes 10/06/2025)
- "hoy a las 5 pm" -> {{"dateTime": "10/06/2025 17:00"}}
Si no puedes determinar una fecha y hora claras, responde: {{"dateTime": null}}"""


def local_now() -> datetime:
    return datetime.now(LOCAL_TZ)


def format_now_for_prompt(now: datetime) -> str:
    return (
        f"{WEEKDAY_NAMES[now.weekday()]} {now.day} de {MONTH_NAMES[now.month - 1]} de {now.year}, "
        f"{now.strftime('%H:%M')} ({now.strftime('%d/%m/%Y')})"
    )


def _resolve_day(normalized: str, today: date) -> Optional[date]:
    explicit = _EXPLICIT_DATE_RE.search(normalized)
    if explicit:
        day, month, year = explicit.groups()
        if year is None:
            candidate_year = today.year
        else:
            candidate_year = int(year) + 2000 if len(year) == 2 else int(year)
        try:
            resolved = date(candidate_year, int(month), int(day))
        except ValueError:
            return None
        if year is None and resolved < today:
            try:
                resolved = resolved.replace(year=today.year + 1)
            except ValueError:
                return None
        return resolved

    # "de la mañana" names a time of day, not tomorrow
    without_meridiem = normalized.replace("de la manana", " ")
    if "pasado manana" in without_meridiem:
        return today + timedelta(days=2)
    if re.search(r"\bmanana\b", without_meridiem):
        return today + timedelta(days=1)
    if re.search(r"\bhoy\b", without_meridiem):
        return today

    for name, weekday in WEEKDAYS.items():
        if re.search(rf"\b{name}\b", without_meridiem):
            days_ahead = (weekday - today.weekday()) % 7 or 7
            return today + timedelta(days=days_ahead)
    return None


def _resolve_time(normalized: str) -> Optional[time]:
    minute = 0
    clock = _CLOCK_RE.search(normalized)
    if clock:
        hour, minute = int(clock.group(1)), int(clock.group(2))
    else:
        at_hour = _AT_HOUR_RE.search(normalized) or _BARE_MERIDIEM_RE.search(normalized)
        if not at_hour:
            return None
        hour = int(at_hour.group(1))
        if "y media" in at_hour.group(0):
            minute = 30

    is_pm = bool(_PM_RE.search(normalized))
    is_am = bool(_AM_RE.search(normalized))
    if is_pm and hour < 12:
        hour += 12
    elif is_am and hour == 12:
        hour = 0
    elif not (is_pm or is_am) and hour < 8:
        # "a las 5" could be 05:00 or 17:00
        return None

    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def parse_appointment_locally(text: str, now: datetime) -> Optional[datetime]:
    """Resolve common Spanish day/time expressions without a model call."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return None
    day = _resolve_day(normalized, now.date())
    at = _resolve_time(normalized)
    if day is None or at is None:
        return None
    return datetime.combine(day, at, tzinfo=now.tzinfo)


def _parse_with_model(text: str, now: datetime) -> Optional[datetime]:
    prompt = SCHEDULE_PROMPT.format(now=format_now_for_prompt(now), request=text)
    result = generate_json([{"role": "user", "content": prompt}], stage="schedule_llm_ms", max_tokens=60)
    if not result.ok:
        logger.warning(f"Appointment parsing failed: {result.error}")
        return None
    try:
        parsed = ScheduleResult.model_validate(result.value)
    except ValidationError as exc:
        logger.warning(f"Appointment reply failed schema validation: {exc}")
        return None
    if parsed.dateTime is None:
        return None
    return datetime.strptime(parsed.dateTime, DATETIME_FORMAT).replace(tzinfo=now.tzinfo)


def parse_appointment(text: str, now: Optional[datetime] = None) -> ScheduleResult:
    """Turn a free-text appointment request into ``DD/MM/YYYY HH:mm``.

    ``now`` is the caller's wall-clock time in the schedule time zone. Returns
    ``dateTime=None`` when the request does not name a concrete future moment.
    """
    now = now or local_now()
    if not text or not text.strip():
        return ScheduleResult(dateTime=None)

    resolved = parse_appointment_locally(text, now)
    if resolved is None:
        resolved = _parse_with_model(text, now)
    if resolved is None:
        return ScheduleResult(dateTime=None)

    if resolved <= now:
        logger.info(f"Appointment resolved to the past: {resolved.strftime(DATETIME_FORMAT)}")
        return ScheduleResult(dateTime=None)
    return ScheduleResult(dateTime=resolved.strftime(DATETIME_FORMAT))


def is_within_business_hours(date_time: str) -> bool:
    try:
        moment = datetime.strptime(date_time, DATETIME_FORMAT)
    except ValueError:
        return False
    opens, closes = BUSINESS_HOURS[moment.weekday()]
    return opens <= moment.time() <= closes
