"""
Slot extraction - pure text parsers for the scheduling dialogue (pt-BR).

Nothing here touches the database or the AI provider. Confirmation and
disambiguation replies are matched against fixed vocabularies so they keep
working when the completion API is down.
"""
import re
import unicodedata
from datetime import datetime, timedelta, tzinfo
from typing import Optional

from src.schemas.scheduling import CandidateChoice

# "17h", "17h30", "17:00", "9 horas", "17hs"
TIME_RE = re.compile(r"\b(\d{1,2})\s*(?:horas?\b|hrs?|hs?|:)(\d{2})?\b")
# "24/01", "24/01/26", "24/01/2026"
DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
DIA_RE = re.compile(r"\bdia\s+(\d{1,2})\b")
BARE_DAY_RE = re.compile(r"\b(\d{1,2})\b")
RELATIVE_DAY_RE = re.compile(r"\b(hoje|amanha|depois de amanha)\b")

YES_RE = re.compile(
    r"^(sim|s|confirmo|confirmar|confirmado|ok|okay|pode sim|pode|isso mesmo|isso|claro)\b"
)
NO_RE = re.compile(
    r"^(nao quero|nao|n|negativo|remarcar|reagendar|cancelar)\b"
)
CHOICE_RE = re.compile(r"^\s*([1-3])[\s).]*$")

# Tokens stripped from the edges of a free-text property query
QUERY_FILLER_WORDS = frozenset({
    "a", "ao", "as", "o", "os", "um", "uma", "uns", "umas", "e", "de", "do", "da",
    "dos", "das", "no", "na", "nos", "nas", "em", "para", "pra", "por", "com",
    "que", "quero", "queria", "gostaria", "posso", "podemos", "vamos", "visitar",
    "visita", "agendar", "agendamento", "marcar", "ver", "conhecer", "tem", "algum",
    "alguma", "imovel", "imoveis", "apartamento", "apto", "casa", "sobrado",
    "cobertura", "terreno", "sala", "bairro", "rua", "endereco", "fica", "perto",
    "dia", "hoje", "amanha", "depois", "horas", "hora", "h", "hs", "proximo",
    "proxima", "semana", "oi", "ola", "bom", "boa", "tarde", "noite", "manha",
    "favor", "obrigado", "obrigada", "aquele", "aquela", "esse", "essa", "este",
    "esta", "ai", "la", "ali", "mesmo", "tambem", "eu",
})
_EDGE_PUNCTUATION = ".,;:!?()[]{}\"'*"
MIN_QUERY_LETTERS = 4
MAX_MONTHS_AHEAD = 13


def normalize_text(text: Optional[str]) -> str:
    """NFD, drop combining marks, trim, lower-case."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(c for c in decomposed if unicodedata.category(c) != "Mn")
    return stripped.strip().lower()


def _build(year: int, month: int, day: int, hour: int, minute: int, tz: tzinfo) -> Optional[datetime]:
    try:
        return datetime(year, month, day, hour, minute, tzinfo=tz)
    except ValueError:
        return None


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def parse_datetime(text: Optional[str], now: datetime, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """
    Parse a pt-BR date/time into an aware datetime in the default offset.

    Accepts "dia 24 às 17h", "24/01 17:00", "24/01/2026 9h30", "24 17h",
    "amanhã às 14h". An explicit hour is mandatory. A bare day means the next
    occurrence of that day of month. Returns None when nothing usable is found.
    """
    if tz is None:
        from src.utils.timezone import get_default_tz
        tz = get_default_tz()

    t = normalize_text(text)
    if not t:
        return None

    time_match = TIME_RE.search(t)
    if not time_match:
        return None

    hour = int(time_match.group(1))
    minute = int(time_match.group(2) or 0)
    if hour > 23 or minute > 59:
        return None

    # Digits consumed by the time expression are never a day
    rest = t[:time_match.start()] + " " + t[time_match.end():]
    local_now = now.astimezone(tz)

    dmy = DATE_RE.search(rest)
    if dmy:
        day, month = int(dmy.group(1)), int(dmy.group(2))
        raw_year = dmy.group(3)
        if raw_year is None:
            year = local_now.year
        elif len(raw_year) == 2:
            year = 2000 + int(raw_year)
        elif len(raw_year) == 4:
            year = int(raw_year)
        else:
            return None
        if not (1 <= month <= 12) or not (1 <= day <= 31):
            return None
        return _build(year, month, day, hour, minute, tz)

    relative = RELATIVE_DAY_RE.search(rest)
    dia = DIA_RE.search(rest)
    if relative and not dia:
        offset_days = {"hoje": 0, "amanha": 1, "depois de amanha": 2}[relative.group(1)]
        target = local_now.date() + timedelta(days=offset_days)
        return _build(target.year, target.month, target.day, hour, minute, tz)

    day_match = dia or BARE_DAY_RE.search(rest)
    if not day_match:
        return None
    day = int(day_match.group(1))
    if not (1 <= day <= 31):
        return None

    # Next month that has this day and is still ahead (31 skips April, June...)
    year, month = local_now.year, local_now.month
    for _ in range(MAX_MONTHS_AHEAD):
        candidate = _build(year, month, day, hour, minute, tz)
        if candidate is not None and candidate >= local_now:
            return candidate
        year, month = _next_month(year, month)
    return None


def parse_yes_no(text: Optional[str]) -> Optional[str]:
    """Return "yes", "no" or None. Anchored at the start of the reply."""
    t = normalize_text(text)
    if not t:
        return None
    if YES_RE.match(t):
        return "yes"
    if NO_RE.match(t):
        return "no"
    return None


def _code_re(code_prefix: str) -> re.Pattern:
    return re.compile(rf"\b({re.escape(code_prefix)}-[A-Z0-9]+)\b", re.IGNORECASE)


def extract_property_code(text: Optional[str], code_prefix: str = "IMV") -> Optional[str]:
    """Find an explicit property code such as IMV-001 (returned upper-cased)."""
    if not text:
        return None
    match = _code_re(code_prefix).search(text)
    return match.group(1).upper() if match else None


def parse_candidate_choice(text: Optional[str], code_prefix: str = "IMV") -> Optional[CandidateChoice]:
    """A reply of "1".."3" or a property code, or None."""
    if not text or not text.strip():
        return None
    match = CHOICE_RE.match(text)
    if match:
        return CandidateChoice(index=int(match.group(1)) - 1)
    code = extract_property_code(text, code_prefix)
    if code:
        return CandidateChoice(code=code)
    return None


def _is_date_or_time_token(norm: str) -> bool:
    return bool(
        re.fullmatch(r"\d{1,2}(?:h|hs|hrs?|horas?|h\d{2}|:\d{2})", norm)
        or re.fullmatch(r"\d{1,2}/\d{1,2}(?:/\d{2,4})?", norm)
    )


def extract_property_query(text: Optional[str], code_prefix: str = "IMV") -> Optional[str]:
    """
    Pull the free-text fragment worth a fuzzy address search out of a message.

    "Quero visitar um apartamento na Vila Mariana dia 24 às 17h" -> "Vila Mariana".
    Date/time expressions and codes are dropped anywhere; filler words and
    numbers only at the edges, so "Jardim das Flores" survives intact.
    """
    if not text or not text.strip():
        return None
    if parse_yes_no(text):
        return None

    code_re = _code_re(code_prefix)
    tokens = []
    for raw in text.split():
        token = raw.strip(_EDGE_PUNCTUATION)
        if not token:
            continue
        norm = normalize_text(token)
        if code_re.fullmatch(token) or _is_date_or_time_token(norm):
            continue
        tokens.append((token, norm))

    def is_filler(norm: str) -> bool:
        return norm in QUERY_FILLER_WORDS or norm.isdigit()

    while tokens and is_filler(tokens[0][1]):
        tokens.pop(0)
    while tokens and is_filler(tokens[-1][1]):
        tokens.pop()

    fragment = " ".join(token for token, _ in tokens)
    if sum(1 for c in fragment if c.isalpha()) < MIN_QUERY_LETTERS:
        return None
    return fragment


def escape_like(fragment: str) -> str:
    """Escape LIKE wildcards so user text is matched literally (escape char '\\')."""
    return fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


UUID_RE = re.compile(
    r"\b([0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12})\b",
    re.IGNORECASE,
)


def extract_property_uuid(text: Optional[str]) -> Optional[str]:
    """An explicit property UUID pasted into the chat (staff links do this)."""
    if not text:
        return None
    match = UUID_RE.search(text)
    return match.group(1).lower() if match else None
