from chatiq_kb.search.types import LanguageDetection

ENGLISH_STOPWORDS = {"the", "and", "is", "are", "of", "to", "in", "for", "with", "that", "this", "it", "as", "on"}

MIN_LETTER_COUNT = 20
MIN_CONFIDENCE = 0.6
SAMPLE_CHARS = 5000

THAI_RANGE = (0x0E00, 0x0E7F)
HIRAGANA_RANGE = (0x3040, 0x309F)
KATAKANA_RANGE = (0x30A0, 0x30FF)
HAN_RANGES = ((0x4E00, 0x9FFF), (0x3400, 0x4DBF))
HANGUL_RANGE = (0xAC00, 0xD7AF)


def _in_range(code_point: int, bounds) -> bool:
    return bounds[0] <= code_point <= bounds[1]


def _count_stopwords(text: str) -> int:
    tokens = "".join(c if "a" <= c <= "z" else " " for c in text.lower()).split()
    return sum(1 for token in tokens if token in ENGLISH_STOPWORDS)


def normalize_language_tag(tag: str) -> str:
    """Lower-case the primary subtag and upper-case two-letter region subtags ("EN-us" -> "en-US")."""
    trimmed = tag.strip()
    if not trimmed:
        return trimmed
    primary, *rest = trimmed.split("-")
    parts = [primary.lower()] + [part.upper() if len(part) == 2 else part for part in rest]
    return "-".join(part for part in parts if part)


def detect_language(text: str) -> LanguageDetection:
    """
    Guess the language of a short text from the scripts it is written in.

    Thai, Japanese, Korean and Chinese are recognised by code point ranges;
    Latin text is only called English when it contains English stop words.
    Anything shorter than MIN_LETTER_COUNT letters is left undetected.
    """
    sample = text[:SAMPLE_CHARS]
    thai = hiragana = katakana = han = hangul = latin = 0

    for char in sample:
        code_point = ord(char)
        if _in_range(code_point, THAI_RANGE):
            thai += 1
        elif _in_range(code_point, HIRAGANA_RANGE):
            hiragana += 1
        elif _in_range(code_point, KATAKANA_RANGE):
            katakana += 1
        elif any(_in_range(code_point, bounds) for bounds in HAN_RANGES):
            han += 1
        elif _in_range(code_point, HANGUL_RANGE):
            hangul += 1
        elif "A" <= char <= "Z" or "a" <= char <= "z":
            latin += 1

    total = thai + hiragana + katakana + han + hangul + latin
    if total < MIN_LETTER_COUNT:
        return LanguageDetection()

    if thai / total >= MIN_CONFIDENCE:
        return LanguageDetection(language="th", confidence=thai / total)

    kana = hiragana + katakana
    # Japanese text mixes kana with Han, so any hiragana is decisive
    if kana / total >= MIN_CONFIDENCE or hiragana > 0:
        return LanguageDetection(language="ja", confidence=kana / total)

    if hangul / total >= MIN_CONFIDENCE:
        return LanguageDetection(language="ko", confidence=hangul / total)

    if han / total >= MIN_CONFIDENCE:
        return LanguageDetection(language="zh", confidence=han / total)

    if latin / total >= MIN_CONFIDENCE:
        hits = _count_stopwords(sample)
        if hits >= 2:
            return LanguageDetection(language="en", confidence=min(0.55 + hits / 50, 0.85))

    return LanguageDetection()


class ScriptLanguageDetector:
    def detect(self, text: str) -> LanguageDetection:
        return detect_language(text)
