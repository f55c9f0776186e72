"""
Unit tests for the categorization cascade.
"""
from decimal import Decimal

import pytest

from core.cascade import (
    AmountBucket,
    AmountBucketRule,
    CascadeConfig,
    ContextRule,
    LabelEntry,
    affects_pnl_for,
    balance_impact_for,
    classify,
    is_amount_direction_valid,
    matches_pattern,
)
from core.schema import Category, Transaction, UserRule


def txn(index, description, amount, counterparty=None, label=None):
    return Transaction(
        index=index,
        row_number=index + 2,
        description=description,
        amount=Decimal(str(amount)),
        counterparty=counterparty,
        label=label,
    )


def only(results):
    assert len(results) == 1
    return results[0]


def test_longest_keyword_wins():
    """Specificity tie-break: 'ABCDEF' beats 'ABC'."""
    categories = [
        Category(id="short", code="SHORT", type="EXCLUDED", keywords=["ABC"]),
        Category(id="long", code="LONG", type="EXCLUDED", keywords=["ABCDEF"]),
    ]
    matched, unresolved = classify([txn(0, "PAYMENT ABCDEF LTD", -10)], categories)

    result = only(matched)
    assert result.category_code == "LONG"
    assert result.source == "keyword"
    assert result.confidence == 0.95
    assert unresolved == []


def test_equal_length_keywords_use_priority_then_code():
    categories = [
        Category(id="b", code="BBB", type="EXCLUDED", keywords=["XYZ"], match_priority=1),
        Category(id="a", code="AAA", type="EXCLUDED", keywords=["XYZ"], match_priority=1),
        Category(id="c", code="CCC", type="EXCLUDED", keywords=["XYZ"], match_priority=5),
    ]
    assert only(classify([txn(0, "XYZ", -1)], categories)[0]).category_code == "CCC"

    categories[2] = categories[2].model_copy(update={"match_priority": 0})
    assert only(classify([txn(0, "XYZ", -1)], categories)[0]).category_code == "AAA"


def test_keyword_match_is_case_insensitive(categories):
    matched, _ = classify([txn(0, "eft ucreti", -5)], categories)
    assert only(matched).category_code == "BANKA"


def test_directionality_guard(categories):
    """Income codes never get negative amounts and expense codes never positive ones."""
    transactions = [
        txn(0, "KIRA GELIRI MART", 1000),
        txn(1, "DANISMANLIK IADE", -1000),
        txn(2, "KOMISYON", 15),
    ]
    matched, unresolved = classify(transactions, categories)

    assert [(r.transaction_index, r.category_code) for r in matched] == [(0, "KIRA_IN")]
    assert [t.index for t in unresolved] == [1, 2]


@pytest.mark.parametrize("code,ctype,amount,valid", [
    ("DANIS", "INCOME", 1, True),
    ("DANIS", "INCOME", -1, False),
    ("DANIS", "INCOME", 0, False),
    ("BANKA", "EXPENSE", -1, True),
    ("BANKA", "EXPENSE", 1, False),
    ("ORTAK_IN", "PARTNER", 1, True),
    ("ORTAK_IN", "PARTNER", -1, False),
    ("FAIZ_OUT", "FINANCING", -1, True),
    ("FAIZ_OUT", "FINANCING", 1, False),
    ("LEASING", "FINANCING", 1, True),
    ("LEASING", "FINANCING", -1, True),
    ("IC_TRANSFER", "EXCLUDED", -1, True),
])
def test_is_amount_direction_valid(code, ctype, amount, valid):
    category = Category(id=code, code=code, type=ctype)
    assert is_amount_direction_valid(category, Decimal(amount)) is valid


def test_negative_pattern_excludes_keyword(categories):
    config = CascadeConfig(negative_patterns={"KIRA_OUT": ["ARAC KIRALAMA"]})
    matched, unresolved = classify([txn(0, "ARAC KIRALAMA A.S.", -500)], categories, config=config)

    assert matched == []
    assert [t.index for t in unresolved] == [0]


def test_negative_pattern_falls_back_to_other_keyword(categories):
    config = CascadeConfig(negative_patterns={"KIRA_OUT": ["KIRALAMA"]})
    matched, _ = classify([txn(0, "KIRALAMA KOMISYON", -5)], categories, config=config)
    assert only(matched).category_code == "BANKA"


def test_user_rule_precedes_keywords(categories):
    rules = [UserRule(id="r1", pattern="KOMISYON", category_id="c-other-out")]
    matched, _ = classify([txn(0, "KOMISYON", -5)], categories, rules)

    result = only(matched)
    assert result.category_code == "DIGER_OUT"
    assert result.source == "user_rule"
    assert result.confidence == 1.0


def test_user_rules_ordered_by_priority(categories):
    rules = [
        UserRule(id="late", pattern="ACME", category_id="c-other-out", priority=5),
        UserRule(id="early", pattern="ACME", category_id="c-fee", priority=1),
    ]
    matched, _ = classify([txn(0, "ACME PAYMENT", -5)], categories, rules)
    assert only(matched).category_code == "BANKA"


@pytest.mark.parametrize("rule_type,pattern,description,hit", [
    ("contains", "acme", "PAYMENT ACME LTD", True),
    ("startsWith", "payment", "PAYMENT ACME LTD", True),
    ("startsWith", "acme", "PAYMENT ACME LTD", False),
    ("exact", "payment acme ltd", "PAYMENT ACME LTD", True),
    ("exact", "payment acme", "PAYMENT ACME LTD", False),
    ("regex", r"acme\s+ltd$", "PAYMENT ACME LTD", True),
    ("regex", r"[unclosed", "PAYMENT [unclosed", False),
])
def test_matches_pattern(rule_type, pattern, description, hit):
    assert matches_pattern(description, pattern, rule_type) is hit


def test_user_rule_amount_condition(categories):
    rules = [UserRule(id="r1", pattern="ACME", category_id="c-other-in", amount_condition="positive")]
    matched, unresolved = classify([txn(0, "ACME", 10), txn(1, "ACME", -10)], categories, rules)

    assert [r.transaction_index for r in matched] == [0]
    assert [t.index for t in unresolved] == [1]


def test_partner_rule_maps_by_sign(categories):
    rules = [UserRule(id="p", pattern="AHMET YILMAZ", is_partner_rule=True)]
    matched, _ = classify(
        [txn(0, "EFT AHMET YILMAZ", -2000), txn(1, "GELEN EFT AHMET YILMAZ", 3000)],
        categories,
        rules,
    )

    out, back = matched
    assert (out.category_code, out.balance_impact, out.affects_pnl) == ("ORTAK_OUT", "liability_increase", False)
    assert (back.category_code, back.balance_impact) == ("ORTAK_IN", "liability_decrease")
    assert out.counterparty == "AHMET YILMAZ"


def test_rule_with_missing_category_is_skipped(categories):
    rules = [
        UserRule(id="a", pattern="ACME", category_id="does-not-exist", priority=0),
        UserRule(id="b", pattern="ACME", category_id="c-fee", priority=1),
    ]
    matched, _ = classify([txn(0, "ACME", -1)], categories, rules)
    assert only(matched).category_code == "BANKA"


def test_inactive_rules_and_categories_are_ignored(categories):
    rules = [UserRule(id="r", pattern="KOMISYON", category_id="c-other-out", is_active=False)]
    inactive = [c.model_copy(update={"is_active": False}) if c.code == "BANKA" else c for c in categories]

    matched, unresolved = classify([txn(0, "KOMISYON", -5)], inactive, rules)
    assert matched == []
    assert len(unresolved) == 1


def test_context_rule_counterparty(categories):
    config = CascadeConfig(context_rules=[
        ContextRule(name="landlord", counterparty_patterns=["EMLAK A.S."], category_code="KIRA_OUT", confidence=1.0),
    ])
    matched, _ = classify([txn(0, "HAVALE", -9000, counterparty="Emlak A.S.")], categories, config=config)

    result = only(matched)
    assert (result.category_code, result.source, result.confidence) == ("KIRA_OUT", "context_rule", 1.0)


def test_context_rule_prefix_and_amount_bound(categories):
    config = CascadeConfig(context_rules=[
        ContextRule(name="small fees", description_prefix="HESAP", max_abs_amount=Decimal("100"),
                    amount_condition="negative", category_code="BANKA", confidence=0.9),
    ])
    matched, unresolved = classify(
        [txn(0, "HESAP ISLETIM", -50), txn(1, "HESAP ISLETIM", -500)], categories, config=config,
    )

    assert only(matched).transaction_index == 0
    assert [t.index for t in unresolved] == [1]


def test_context_rule_precedes_keywords(categories):
    config = CascadeConfig(context_rules=[
        ContextRule(name="sgk", counterparty_patterns=["SGK"], category_code="DIGER_OUT"),
    ])
    matched, _ = classify([txn(0, "SGK PRIM", -100)], categories, config=config)
    assert only(matched).source == "context_rule"


def test_label_exact_then_partial(categories):
    config = CascadeConfig(labels=[
        LabelEntry(label="Kira", inbound_code="KIRA_IN", outbound_code="KIRA_OUT", confidence=0.9),
        LabelEntry(label="Ofis kira", category_code="DIGER_OUT", confidence=0.8),
    ])
    matched, unresolved = classify(
        [
            txn(0, "X", -100, label="kira"),
            txn(1, "X", 100, label="KIRA"),
            txn(2, "X", -100, label="Ofis kira mart"),
            txn(3, "X", 0, label="Kira"),
        ],
        categories,
        config=config,
    )

    by_index = {r.transaction_index: r for r in matched}
    assert by_index[0].category_code == "KIRA_OUT"
    assert by_index[1].category_code == "KIRA_IN"
    assert by_index[2].category_code == "DIGER_OUT"
    assert by_index[2].source == "excel_label"
    assert [t.index for t in unresolved] == [3]


def test_amount_buckets(categories):
    config = CascadeConfig(amount_rules=[
        AmountBucketRule(
            name="fuel",
            counterparty_patterns=["OPET"],
            buckets=[
                AmountBucket(min_amount=Decimal("0"), max_amount=Decimal("1000"), category_code="DIGER_OUT",
                             confidence=0.8),
                AmountBucket(min_amount=Decimal("1000"), category_code="BANKA", confidence=0.6),
            ],
        ),
    ])
    matched, unresolved = classify(
        [txn(0, "POS", -999.99, counterparty="OPET"), txn(1, "POS OPET", -1000), txn(2, "POS", -5)],
        categories,
        config=config,
    )

    assert [(r.category_code, r.confidence, r.source) for r in matched] == [
        ("DIGER_OUT", 0.8, "amount_rule"),
        ("BANKA", 0.6, "amount_rule"),
    ]
    assert [t.index for t in unresolved] == [2]


def test_stage_result_violating_direction_falls_through(categories):
    """A context rule proposing an expense for money in is skipped; later stages may still match."""
    config = CascadeConfig(context_rules=[
        ContextRule(name="wrong", description_patterns=["DANISMANLIK"], category_code="DIGER_OUT"),
    ])
    matched, _ = classify([txn(0, "DANISMANLIK BEDELI", 5000)], categories, config=config)

    result = only(matched)
    assert (result.category_code, result.source) == ("DANIS", "keyword")


def test_classify_is_deterministic(categories):
    config = CascadeConfig(
        labels=[LabelEntry(label="Maas", category_code="PERSONEL")],
        negative_patterns={"KIRA_OUT": ["KIRALAMA"]},
    )
    rules = [UserRule(id="p", pattern="PARTNER", is_partner_rule=True)]
    transactions = [
        txn(0, "KOMISYON EFT UCRETI", -5),
        txn(1, "MAAS ODEMESI", -20000),
        txn(2, "PARTNER TRANSFER", 1000),
        txn(3, "UNKNOWN", -1, label="maas"),
        txn(4, "NOTHING MATCHES", -7),
    ]

    first = classify(transactions, categories, rules, config)
    second = classify(list(transactions), list(categories), list(rules), config)

    assert [r.model_dump_json() for r in first[0]] == [r.model_dump_json() for r in second[0]]
    assert first[1] == second[1]


def test_matched_and_unresolved_are_disjoint(categories):
    transactions = [txn(i, "KOMISYON" if i % 2 else "SOMETHING", -1) for i in range(10)]
    matched, unresolved = classify(transactions, categories)

    matched_ids = {r.transaction_index for r in matched}
    unresolved_ids = {t.index for t in unresolved}
    assert matched_ids.isdisjoint(unresolved_ids)
    assert matched_ids | unresolved_ids == set(range(10))


@pytest.mark.parametrize("ctype,code,expected", [
    ("INCOME", "DANIS", True),
    ("EXPENSE", "BANKA", True),
    ("EXPENSE", "KREDI_OUT", False),
    ("EXPENSE", "NAKIT_CEKME", False),
    ("PARTNER", "ORTAK_IN", False),
    ("FINANCING", "LEASING", False),
    ("INVESTMENT", "EKIPMAN", False),
    ("EXCLUDED", "IC_TRANSFER", False),
])
def test_affects_pnl(ctype, code, expected):
    assert affects_pnl_for(ctype, code) is expected


@pytest.mark.parametrize("ctype,amount,expected", [
    ("INCOME", 1, "equity_increase"),
    ("EXPENSE", -1, "equity_decrease"),
    ("PARTNER", 1, "liability_decrease"),
    ("PARTNER", -1, "liability_increase"),
    ("FINANCING", 1, "liability_increase"),
    ("FINANCING", -1, "liability_decrease"),
    ("INVESTMENT", -1, "asset_increase"),
    ("EXCLUDED", -1, "none"),
])
def test_balance_impact(ctype, amount, expected):
    assert balance_impact_for(ctype, Decimal(amount)) == expected
