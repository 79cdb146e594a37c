from app.services.parser import (
    has_multiple_demands,
    merge_hints,
    parse_demand_text,
    split_multi_line_demands,
)


def test_parse_chinese_posting_extracts_hints() -> None:
    parsed = parse_demand_text("需要FICO顾问，上海，5年以上经验，远程，人天：2k")

    assert "FICO" in parsed.module_codes
    assert parsed.city == "上海"
    assert parsed.is_remote is True
    assert parsed.years_text == "5年以上"
    assert parsed.daily_rate == "2000"
    assert parsed.language is None


def test_parse_english_posting_extracts_hints() -> None:
    parsed = parse_demand_text("Need FICO consultant, Shanghai, 5+ years experience")

    assert parsed.module_codes == ["FICO"]
    assert parsed.city == "上海"
    assert parsed.years_text == "5年以上"
    assert parsed.is_remote is None


def test_parse_language_and_rate_variants() -> None:
    assert parse_demand_text("日语流利 SD顾问").language == "日语流利"
    assert parse_demand_text("英语简单 MM").language == "英语简单沟通"
    assert parse_demand_text("FICO 1.5k/天").daily_rate == "1500"
    assert parse_demand_text("FICO 2k=2000").daily_rate == "2000"


def test_parse_multi_region_prefers_known_region() -> None:
    assert parse_demand_text("安徽+江苏 MM顾问").city == "安徽"


def test_parse_onsite_marks_not_remote() -> None:
    assert parse_demand_text("PP顾问 北京现场").is_remote is False


def test_merge_hints_keeps_supplied_values() -> None:
    parsed = parse_demand_text("需要FICO顾问，上海，远程")

    merged = merge_hints({"city": "北京", "module_codes": []}, parsed)

    assert merged["city"] == "北京"
    assert "FICO" in merged["module_codes"]
    assert merged["is_remote"] is True


def test_split_multi_line_demands_returns_each_demand_line() -> None:
    text = "需求列表\n1. FICO顾问 上海 3年经验\n2. MM顾问 北京 5年经验\n"

    assert has_multiple_demands(text) is True
    assert split_multi_line_demands(text) == [
        "1. FICO顾问 上海 3年经验",
        "2. MM顾问 北京 5年经验",
    ]


def test_split_single_demand_returns_whole_text() -> None:
    text = "  FICO顾问 上海 3年经验  "

    assert has_multiple_demands(text) is False
    assert split_multi_line_demands(text) == ["FICO顾问 上海 3年经验"]
    assert split_multi_line_demands("   ") == []
