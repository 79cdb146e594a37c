"""Rule-based extraction of demand hints from free text.

Cheap keyword and regex rules only, no model calls. The output is a set of
*hints*: ingestion only uses them to fill fields a submitter left empty.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

_MODULE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"fico|fi/co|财务|成本", re.IGNORECASE), "FICO"),
    (re.compile(r"mm|物料|采购", re.IGNORECASE), "MM"),
    (re.compile(r"sd|销售|分销", re.IGNORECASE), "SD"),
    (re.compile(r"pp|生产|计划", re.IGNORECASE), "PP"),
    (re.compile(r"(?:^|[^a-z])ewm(?:$|[^a-z])|extended\s*warehouse", re.IGNORECASE), "EWM"),
    (re.compile(r"(?:^|[^a-z])wm(?:$|[^a-z])|仓库|仓储", re.IGNORECASE), "WM"),
    (re.compile(r"hr|人事|人力", re.IGNORECASE), "HR"),
    (re.compile(r"sac|分析云", re.IGNORECASE), "SAC"),
    (re.compile(r"bi|商业智能", re.IGNORECASE), "BI"),
    (re.compile(r"bw|数据仓库", re.IGNORECASE), "BW"),
    (re.compile(r"abap|开发", re.IGNORECASE), "ABAP"),
    (re.compile(r"fiori|菲奥里|pm|设备|维护|ps|项目|系统|mdg|主数据|供应链|顾问", re.IGNORECASE), "OTHER"),
)
_FALLBACK_MODULE_RE = re.compile(r"sap|顾问|需求|项目", re.IGNORECASE)

# Ordered: the first key found in the text wins.
CITY_ALIASES: dict[str, str] = {
    "北京": "北京",
    "beijing": "北京",
    "bj": "北京",
    "上海": "上海",
    "shanghai": "上海",
    "sh": "上海",
    "深圳": "深圳",
    "shenzhen": "深圳",
    "sz": "深圳",
    "广州": "广州",
    "guangzhou": "广州",
    "gz": "广州",
    "杭州": "杭州",
    "hangzhou": "杭州",
    "hz": "杭州",
    "成都": "成都",
    "chengdu": "成都",
    "cd": "成都",
    "武汉": "武汉",
    "wuhan": "武汉",
    "wh": "武汉",
    "南京": "南京",
    "nanjing": "南京",
    "nj": "南京",
    "苏州": "苏州",
    "suzhou": "苏州",
    "远程": "远程",
    "remote": "远程",
    "在家": "远程",
    "居家": "远程",
    "海外": "海外",
    "overseas": "海外",
    "国外": "海外",
    "欧洲": "海外",
    "europe": "海外",
}
PROVINCE_ALIASES: dict[str, str] = {
    "广东": "广东",
    "guangdong": "广东",
    "安徽": "安徽",
    "anhui": "安徽",
    "浙江": "浙江",
    "zhejiang": "浙江",
    "江苏": "江苏",
    "jiangsu": "江苏",
    "山东": "山东",
    "shandong": "山东",
    "河南": "河南",
    "henan": "河南",
    "湖南": "湖南",
    "hunan": "湖南",
    "湖北": "湖北",
    "hubei": "湖北",
    "四川": "四川",
    "sichuan": "四川",
    "福建": "福建",
    "fujian": "福建",
    "河北": "河北",
    "hebei": "河北",
    "陕西": "陕西",
    "shaanxi": "陕西",
    "辽宁": "辽宁",
    "liaoning": "辽宁",
    "吉林": "吉林",
    "jilin": "吉林",
    "黑龙江": "黑龙江",
    "heilongjiang": "黑龙江",
    "江西": "江西",
    "jiangxi": "江西",
    "重庆": "重庆",
    "chongqing": "重庆",
    "天津": "天津",
    "tianjin": "天津",
}

_CJK = "\u4e00-\u9fa5"
_MULTI_REGION_RE = re.compile(rf"([{_CJK}]+)\s*[+＋]\s*([{_CJK}]+)")
_COLON_REGION_RE = re.compile(rf"([{_CJK}]+)[：:]")
_REMOTE_RE = re.compile(r"远程|remote|在家|居家|线上", re.IGNORECASE)
_ONSITE_RE = re.compile(r"现场|onsite|on-site|到岗|驻场", re.IGNORECASE)

_DURATION_RULES: tuple[tuple[re.Pattern[str], Callable[[re.Match[str]], str]], ...] = (
    (re.compile(r"长期|永久|持续"), lambda m: "长期"),
    (re.compile(r"(\d+)\s*年|(\d+)\s*year", re.IGNORECASE), lambda m: f"{m.group(1) or m.group(2)}年"),
    (re.compile(r"(\d+)\s*个月|(\d+)\s*month", re.IGNORECASE), lambda m: f"{m.group(1) or m.group(2)}个月"),
    (re.compile(r"半年"), lambda m: "6个月"),
    (re.compile(r"短期|(\d+)\s*周"), lambda m: f"{m.group(1)}周" if m.group(1) else "短期"),
)


def _bucket_years(match: re.Match[str]) -> str:
    years = int(match.group(1) or match.group(2))
    if years >= 8:
        return f"{years}年以上"
    if years >= 5:
        return f"5-{years}年"
    if years >= 3:
        return f"3-{years}年"
    return f"{years}年"


_YEARS_RULES: tuple[tuple[re.Pattern[str], Callable[[re.Match[str]], str]], ...] = (
    (
        re.compile(r"(\d+)\s*年以上|(\d+)\s*年\+|(\d+)\s*years?\s*\+", re.IGNORECASE),
        lambda m: f"{m.group(1) or m.group(2) or m.group(3)}年以上",
    ),
    (
        re.compile(r"(\d+)\s*-\s*(\d+)\s*年|(\d+)\s*-\s*(\d+)\s*years?", re.IGNORECASE),
        lambda m: f"{m.group(1) or m.group(3)}-{m.group(2) or m.group(4)}年",
    ),
    (re.compile(r"(\d+)\s*年|(\d+)\s*years?", re.IGNORECASE), _bucket_years),
    (re.compile(r"(\d+)\s*\+"), lambda m: f"{m.group(1)}年以上"),
)

_JAPANESE_RE = re.compile(r"日语|japanese|\bjp\b|日文", re.IGNORECASE)
_ENGLISH_RE = re.compile(r"英语|english|\ben\b|英文", re.IGNORECASE)
_FLUENT_RE = re.compile(r"流利|fluent|精通|native", re.IGNORECASE)
_BASIC_RE = re.compile(r"简单|basic", re.IGNORECASE)

_THOUSANDS_RE = re.compile(r"k|千", re.IGNORECASE)
_RATE_AFTER_LABEL_RE = re.compile(r"人天[：:\s]*(\d+(?:\.\d+)?)\s*(?:k|千)?", re.IGNORECASE)
_RATE_EQUATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*k\s*[=＝]\s*(\d+)", re.IGNORECASE)
_RATE_PER_DAY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:k|千)?\s*(?:元)?\s*[/／]\s*(?:天|日)", re.IGNORECASE)
_RATE_PER_MANDAY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:k|千)?\s*(?:元)?\s*[/／]\s*人天", re.IGNORECASE)

_DEMAND_KEYWORDS_RE = re.compile(r"【.*】|fico|mm|sd|pp|hr|abap|bw|bi|北京|上海|深圳|远程|年|月|经验|项目", re.IGNORECASE)
_HEADING_RE = re.compile(r"^(?:建议包含|提示|说明|注意|---|===|#)")
MIN_DEMAND_LINE_LENGTH = 10


@dataclass(slots=True)
class ParsedDemand:
    module_codes: list[str] = field(default_factory=list)
    city: str | None = None
    is_remote: bool | None = None
    duration_text: str | None = None
    years_text: str | None = None
    language: str | None = None
    daily_rate: str | None = None

    def to_hints(self) -> dict[str, Any]:
        return {
            "module_codes": list(self.module_codes),
            "city": self.city,
            "is_remote": self.is_remote,
            "duration_text": self.duration_text,
            "years_text": self.years_text,
            "language": self.language,
            "daily_rate": self.daily_rate,
        }


def parse_demand_text(raw_text: str | None) -> ParsedDemand:
    text = raw_text or ""
    return ParsedDemand(
        module_codes=_parse_module_codes(text),
        city=_parse_city(text),
        is_remote=_parse_remote(text),
        duration_text=_first_rule_match(_DURATION_RULES, text),
        years_text=_first_rule_match(_YEARS_RULES, text),
        language=_parse_language(text),
        daily_rate=_parse_daily_rate(text),
    )


def merge_hints(supplied: dict[str, Any], parsed: ParsedDemand) -> dict[str, Any]:
    """Fill blank submitter hints from parsed ones; supplied values always win."""
    merged = dict(supplied)
    for key, value in parsed.to_hints().items():
        current = merged.get(key)
        if current is None or current == "" or current == []:
            if value is not None and value != "" and value != []:
                merged[key] = value
    return merged


def split_multi_line_demands(raw_text: str | None) -> list[str]:
    if not raw_text or not raw_text.strip():
        return []

    demands = [line for line in (part.strip() for part in raw_text.splitlines()) if _looks_like_demand_line(line)]
    if len(demands) <= 1:
        return [raw_text.strip()]
    return demands


def has_multiple_demands(raw_text: str | None) -> bool:
    if not raw_text:
        return False
    lines = [line.strip() for line in raw_text.splitlines() if line.strip()]
    if len(lines) <= 1:
        return False
    demand_lines = [
        line for line in lines if len(line) >= MIN_DEMAND_LINE_LENGTH and _DEMAND_KEYWORDS_RE.search(line)
    ]
    return len(demand_lines) >= 2


def _looks_like_demand_line(line: str) -> bool:
    if not line or len(line) < MIN_DEMAND_LINE_LENGTH:
        return False
    if _HEADING_RE.match(line):
        return False
    return bool(_DEMAND_KEYWORDS_RE.search(line))


def _parse_module_codes(text: str) -> list[str]:
    codes: list[str] = []
    for pattern, code in _MODULE_PATTERNS:
        if code not in codes and pattern.search(text):
            codes.append(code)
    if not codes and _FALLBACK_MODULE_RE.search(text):
        codes.append("OTHER")
    return codes


def _parse_city(text: str) -> str | None:
    lowered = text.lower()
    city = next((value for key, value in CITY_ALIASES.items() if key in lowered), None)
    if city is None:
        city = next((value for key, value in PROVINCE_ALIASES.items() if key in lowered), None)

    multi = _MULTI_REGION_RE.search(text)
    if multi:
        first, second = multi.group(1), multi.group(2)
        city = _known_region(first) or _known_region(second) or first

    if city is None:
        colon = _COLON_REGION_RE.search(text)
        if colon:
            city = _known_region(colon.group(1))
    return city


def _known_region(name: str) -> str | None:
    return PROVINCE_ALIASES.get(name) or CITY_ALIASES.get(name)


def _parse_remote(text: str) -> bool | None:
    if _REMOTE_RE.search(text):
        return True
    if _ONSITE_RE.search(text):
        return False
    return None


def _parse_language(text: str) -> str | None:
    if _JAPANESE_RE.search(text):
        return "日语流利" if _FLUENT_RE.search(text) else "日语简单沟通"
    if _ENGLISH_RE.search(text):
        if _FLUENT_RE.search(text):
            return "英语流利"
        if _BASIC_RE.search(text):
            return "英语简单沟通"
        return "英语流利"
    return None


def _parse_daily_rate(text: str) -> str | None:
    for pattern in (_RATE_AFTER_LABEL_RE, _RATE_EQUATION_RE, _RATE_PER_DAY_RE, _RATE_PER_MANDAY_RE):
        match = pattern.search(text)
        if not match:
            continue
        if pattern is _RATE_EQUATION_RE:
            return match.group(2)
        rate = float(match.group(1))
        if _THOUSANDS_RE.search(match.group(0)):
            rate *= 1000
        return str(round(rate))
    return None


def _first_rule_match(
    rules: tuple[tuple[re.Pattern[str], Callable[[re.Match[str]], str]], ...],
    text: str,
) -> str | None:
    for pattern, render in rules:
        match = pattern.search(text)
        if match:
            return render(match)
    return None
