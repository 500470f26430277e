"""Amount and account-type extraction from free-text expense messages."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterator

from .entities import AccountClass, AmountPattern, ExtractedAmount

UNIT_WORDS = {
    "ноль": 0, "нуль": 0,
    "один": 1, "одна": 1, "одно": 1, "одну": 1, "одного": 1, "одной": 1,
    "два": 2, "две": 2, "двух": 2,
    "три": 3, "трех": 3, "трёх": 3,
    "четыре": 4, "четырех": 4, "четырёх": 4,
    "пять": 5, "пяти": 5,
    "шесть": 6, "шести": 6,
    "семь": 7, "семи": 7,
    "восемь": 8, "восьми": 8,
    "девять": 9, "девяти": 9,
}

TEEN_WORDS = {
    "десять": 10, "десяти": 10,
    "одиннадцать": 11, "одиннадцати": 11,
    "двенадцать": 12, "двенадцати": 12,
    "тринадцать": 13, "тринадцати": 13,
    "четырнадцать": 14, "четырнадцати": 14,
    "пятнадцать": 15, "пятнадцати": 15,
    "шестнадцать": 16, "шестнадцати": 16,
    "семнадцать": 17, "семнадцати": 17,
    "восемнадцать": 18, "восемнадцати": 18,
    "девятнадцать": 19, "девятнадцати": 19,
}

TEN_WORDS = {
    "двадцать": 20, "двадцати": 20,
    "тридцать": 30, "тридцати": 30,
    "сорок": 40, "сорока": 40,
    "пятьдесят": 50, "пятидесяти": 50,
    "шестьдесят": 60, "шестидесяти": 60,
    "семьдесят": 70, "семидесяти": 70,
    "восемьдесят": 80, "восьмидесяти": 80,
    "девяносто": 90, "девяноста": 90,
}

HUNDRED_WORDS = {
    "сто": 100, "ста": 100,
    "двести": 200, "двухсот": 200,
    "триста": 300, "трехсот": 300, "трёхсот": 300,
    "четыреста": 400, "четырехсот": 400, "четырёхсот": 400,
    "пятьсот": 500, "пятисот": 500,
    "шестьсот": 600, "шестисот": 600,
    "семьсот": 700, "семисот": 700,
    "восемьсот": 800, "восьмисот": 800,
    "девятьсот": 900, "девятисот": 900,
}

FRACTION_WORDS = {"полтора": Decimal("1.5"), "полторы": Decimal("1.5"), "полутора": Decimal("1.5")}

_THOUSAND_FORMS = (
    "тысяча", "тысячи", "тысяч", "тысячу", "тысячей", "тысяче", "тысячам", "тысячами", "тысячах", "тыс",
)
_MILLION_FORMS = (
    "миллион", "миллиона", "миллионов", "миллионы", "миллиону", "миллионом", "миллионе",
    "миллионам", "миллионами", "миллионах", "млн",
)
_BILLION_FORMS = (
    "миллиард", "миллиарда", "миллиардов", "миллиарды", "миллиарду", "миллиардом", "миллиарде",
    "миллиардам", "миллиардами", "миллиардах", "млрд",
)

MULTIPLIER_WORDS: dict[str, int] = {
    **{form: 1_000 for form in _THOUSAND_FORMS},
    **{form: 1_000_000 for form in _MILLION_FORMS},
    **{form: 1_000_000_000 for form in _BILLION_FORMS},
}

SHORTHAND_SUFFIXES = {
    "к": 1_000, "k": 1_000, "тыс": 1_000,
    "m": 1_000_000, "млн": 1_000_000,
    "b": 1_000_000_000, "млрд": 1_000_000_000,
}

CURRENCY_TOKENS = {
    "руб": "RUB", "рубль": "RUB", "рубля": "RUB", "рублей": "RUB", "р": "RUB", "₽": "RUB", "rub": "RUB",
    "доллар": "USD", "доллара": "USD", "долларов": "USD", "$": "USD", "usd": "USD",
    "евро": "EUR", "€": "EUR", "eur": "EUR",
    "сум": "UZS", "сумов": "UZS", "сом": "UZS", "сомов": "UZS", "uzs": "UZS",
}

# kind -> (word -> value)
_WORD_KINDS: dict[str, dict[str, Decimal]] = {
    "unit": {word: Decimal(value) for word, value in UNIT_WORDS.items()},
    "teen": {word: Decimal(value) for word, value in TEEN_WORDS.items()},
    "ten": {word: Decimal(value) for word, value in TEN_WORDS.items()},
    "hundred": {word: Decimal(value) for word, value in HUNDRED_WORDS.items()},
    "fraction": dict(FRACTION_WORDS),
    "multiplier": {word: Decimal(value) for word, value in MULTIPLIER_WORDS.items()},
}
_WORD_LOOKUP: dict[str, tuple[str, Decimal]] = {
    word: (kind, value) for kind, words in _WORD_KINDS.items() for word, value in words.items()
}

# Which token kinds may follow a kind inside one hundreds-chunk.
_CHUNK_SUCCESSORS = {
    "hundred": {"ten", "teen", "unit"},
    "ten": {"unit"},
}

# Longest words first so that "тысячами" wins over "тысяч" and "сорока" over "сорок".
_WORD_ALTERNATION = "|".join(
    re.escape(word) for word in sorted(_WORD_LOOKUP, key=len, reverse=True)
)
_NUMERAL_TOKEN_RE = re.compile(
    r"(?P<digits>(?<![\w.,])(?:\d{1,3}(?:[ \u00a0\u202f]\d{3})+|\d+)(?:[.,]\d+)?(?!\w))"
    rf"|(?P<word>(?<!\w)(?:{_WORD_ALTERNATION})(?!\w))",
    re.IGNORECASE,
)
_SHORTHAND_RE = re.compile(
    r"(?<![\w.,])(\d+(?:[.,]\d+)?)("
    + "|".join(sorted(SHORTHAND_SUFFIXES, key=len, reverse=True))
    + r")(?!\w)",
    re.IGNORECASE,
)
_AMOUNT_RE = re.compile(r"(?<![\d.,])(\d{1,3}(?:[ \u00a0\u202f]\d{3})+|\d+)(?:[.,](\d+))?")
_CURRENCY_ALTERNATION = "|".join(
    re.escape(token) for token in sorted(CURRENCY_TOKENS, key=len, reverse=True)
)
_CURRENCY_AFTER_RE = re.compile(rf"^\s*({_CURRENCY_ALTERNATION})(?!\w)", re.IGNORECASE)
_CURRENCY_BEFORE_RE = re.compile(rf"(?<!\w)({_CURRENCY_ALTERNATION})\s*$", re.IGNORECASE)

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class AccountPolicy:
    """Keyword table deciding whether a message talks about a card or cash."""

    card_keywords: tuple[str, ...]
    cash_keywords: tuple[str, ...]
    tie_break: AccountClass = AccountClass.CARD

    def classify(self, text: str) -> AccountClass:
        lowered = text.lower()
        has_card = any(keyword in lowered for keyword in self.card_keywords)
        has_cash = any(keyword in lowered for keyword in self.cash_keywords)
        if has_card and has_cash:
            return self.tie_break
        if has_card:
            return AccountClass.CARD
        if has_cash:
            return AccountClass.CASH
        return AccountClass.UNKNOWN


DEFAULT_ACCOUNT_POLICY = AccountPolicy(
    card_keywords=("карт", "карточк", "пластик", "банк"),
    cash_keywords=("наличн", "бумажник", "кошел", "деньги", "купюр", "монет", "в руках"),
)


def detect_account_type(text: str, policy: AccountPolicy = DEFAULT_ACCOUNT_POLICY) -> AccountClass:
    return policy.classify(text or "")


@dataclass
class _NumeralRun:
    start: int
    end: int
    total: Decimal = Decimal(0)
    chunk: Decimal | None = None
    last_kind: str | None = None
    last_multiplier: Decimal | None = None
    has_word: bool = False

    @property
    def value(self) -> Decimal:
        return self.total + (self.chunk if self.chunk is not None else Decimal(0))

    def accepts(self, kind: str, value: Decimal) -> bool:
        if kind == "multiplier":
            if self.last_kind == "multiplier":
                return False
            return self.last_multiplier is None or value < self.last_multiplier
        if self.last_kind == "multiplier":
            return kind != "fraction" and value < self.last_multiplier
        return kind in _CHUNK_SUCCESSORS.get(self.last_kind or "", set())

    def add(self, kind: str, value: Decimal, end: int) -> None:
        if kind == "multiplier":
            base = self.chunk if self.chunk is not None else Decimal(1)
            self.total += base * value
            self.chunk = None
            self.last_multiplier = value
        else:
            self.chunk = (self.chunk or Decimal(0)) + value
        self.last_kind = kind
        self.end = end
        if kind != "digit":
            self.has_word = True


def _token_kind(match: re.Match[str]) -> tuple[str, Decimal]:
    if match.group("digits"):
        return "digit", Decimal(re.sub(r"\s", "", match.group("digits")).replace(",", "."))
    return _WORD_LOOKUP[match.group("word").lower()]


def _numeral_runs(text: str) -> Iterator[_NumeralRun]:
    run: _NumeralRun | None = None
    for match in _NUMERAL_TOKEN_RE.finditer(text):
        kind, value = _token_kind(match)
        adjacent = run is not None and not text[run.end : match.start()].strip()
        if run is not None and adjacent and run.accepts(kind, value):
            run.add(kind, value, match.end())
            continue
        if run is not None and run.has_word:
            yield run
        run = _NumeralRun(start=match.start(), end=match.start())
        run.add(kind, value, match.end())
    if run is not None and run.has_word:
        yield run


def _plain_number(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def _expand_shorthand(match: re.Match[str]) -> str:
    number = Decimal(match.group(1).replace(",", "."))
    multiplier = SHORTHAND_SUFFIXES[match.group(2).lower()]
    return _plain_number(number * multiplier)


def normalize_numerals(text: str) -> str:
    """Rewrite Russian numeral words and shorthands ("10к") into digits.

    Adjacent numeral words are composed into a single number
    ("тысяча сто" -> "1100", "2 миллиона" -> "2000000"); words that do not
    form a valid numeral together are converted separately.
    """
    if not text:
        return text
    text = _SHORTHAND_RE.sub(_expand_shorthand, text)
    pieces: list[str] = []
    cursor = 0
    for run in _numeral_runs(text):
        pieces.append(text[cursor : run.start])
        pieces.append(_plain_number(run.value))
        cursor = run.end
    pieces.append(text[cursor:])
    return "".join(pieces)


def _detect_adjacent_currency(text: str, start: int, end: int) -> tuple[AmountPattern, str | None]:
    after = _CURRENCY_AFTER_RE.match(text[end:])
    if after:
        return AmountPattern.AMOUNT_CURRENCY, CURRENCY_TOKENS[after.group(1).lower()]
    before = _CURRENCY_BEFORE_RE.search(text[:start])
    if before:
        return AmountPattern.CURRENCY_AMOUNT, CURRENCY_TOKENS[before.group(1).lower()]
    return AmountPattern.AMOUNT_ONLY, None


def extract_amount(text: str, normalize: bool = True) -> ExtractedAmount:
    """Return the first amount mentioned in ``text``.

    Never raises; a message without any numeral yields ``amount=None``.
    """
    if not text:
        return ExtractedAmount(amount=None)
    source = normalize_numerals(text) if normalize else text
    match = _AMOUNT_RE.search(source)
    if not match:
        return ExtractedAmount(amount=None)

    integer_part = re.sub(r"\s", "", match.group(1))
    fraction_part = match.group(2)
    raw = f"{integer_part}.{fraction_part}" if fraction_part else integer_part
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return ExtractedAmount(amount=None)

    pattern, currency = _detect_adjacent_currency(source, match.start(), match.end())
    return ExtractedAmount(amount=amount, matched_pattern=pattern, currency=currency)


def format_amount(amount: Decimal | int | float | None) -> str:
    """Format as "1 234,5": space-grouped thousands, comma decimals, no currency."""
    if amount is None:
        return "0"
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    value = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    integer, _, fraction = f"{abs(value):f}".partition(".")
    grouped = f"{int(integer):,}".replace(",", " ")
    fraction = fraction.rstrip("0")
    if fraction:
        return f"{sign}{grouped},{fraction}"
    return f"{sign}{grouped}"


def parse_amount(text: str | None) -> Decimal | None:
    """Inverse of :func:`format_amount`; ``None`` when the text is not a number."""
    if not text:
        return None
    cleaned = re.sub(r"\s+", "", text).replace(",", ".")
    if not cleaned:
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value
