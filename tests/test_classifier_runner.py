"""
Tests for the classifier fallback stage.
"""
from decimal import Decimal

import pytest

from core.schema import ClassifierResponse, ClassifierResult, Transaction
from services.classifier_runner import ClassifierBatchRunner
from tests.helpers.stubs import StubClassifierService


pytestmark = pytest.mark.anyio


def txns(count, amount=-10):
    return [
        Transaction(index=i, row_number=i + 2, description=f"ROW {i}", amount=Decimal(amount))
        for i in range(count)
    ]


def runner(service, retry_policy, batch_size=4, concurrency=2):
    return ClassifierBatchRunner(service, batch_size=batch_size, concurrency=concurrency, retry_policy=retry_policy)


async def test_empty_input_makes_no_calls(categories, retry_policy):
    service = StubClassifierService(lambda t: ("DIGER_OUT", 0.8))
    outcome = await runner(service, retry_policy).classify([], categories)

    assert outcome.matched == []
    assert outcome.unmatched == []
    assert service.requests == []


async def test_all_resolved(categories, retry_policy):
    service = StubClassifierService(lambda t: ("DIGER_OUT", 0.8))
    outcome = await runner(service, retry_policy).classify(txns(10), categories)

    assert [r.transaction_index for r in outcome.matched] == list(range(10))
    assert {r.source for r in outcome.matched} == {"ai"}
    assert outcome.matched[0].balance_impact == "equity_decrease"
    assert outcome.unmatched == []
    assert len(service.requests) == 3
    assert service.classified_indices == list(range(10))


async def test_omitted_indices_become_unmatched(categories, retry_policy):
    service = StubClassifierService(lambda t: None if t.index in (3, 7) else ("DIGER_OUT", 0.6))
    outcome = await runner(service, retry_policy).classify(txns(8), categories)

    assert len(outcome.matched) == 6
    assert [(u.transaction_index, u.row_number, u.reason) for u in outcome.unmatched] == [
        (3, 5, "No classifier result"),
        (7, 9, "No classifier result"),
    ]
    assert all(r.needs_review for r in outcome.matched)


async def test_unknown_code_and_direction_are_rejected(categories, retry_policy):
    def decide(t):
        if t.index == 0:
            return ("NOT_A_CODE", 0.9)
        if t.index == 1:
            return ("DANIS", 0.9)
        return ("BANKA", 0.9)

    service = StubClassifierService(decide)
    outcome = await runner(service, retry_policy).classify(txns(3), categories)

    assert [r.transaction_index for r in outcome.matched] == [2]
    reasons = {u.transaction_index: u.reason for u in outcome.unmatched}
    assert reasons[0] == "Unknown category code NOT_A_CODE"
    assert reasons[1].startswith("Category DANIS conflicts with amount sign")
    assert len(service.requests) == 1


async def test_failing_batches_are_reported(categories, retry_policy, fake_sleep):
    service = StubClassifierService(lambda t: ("DIGER_OUT", 0.8), fail_always=True)
    outcome = await runner(service, retry_policy, batch_size=5).classify(txns(7), categories)

    assert outcome.matched == []
    assert len(outcome.unmatched) == 7
    assert [f.batch_index for f in outcome.failed_batches] == [0, 1]
    assert outcome.failed_batches[1].row_range.start == 7
    assert outcome.failed_batches[1].row_range.end == 8
    assert outcome.failed_batches[0].retry_count == 3
    assert outcome.unmatched[0].reason.startswith("Classifier batch 1 failed")
    # Four attempts per batch
    assert len(service.requests) == 8


async def test_empty_response_is_retried(categories, retry_policy, fake_sleep):
    calls = {"n": 0}

    class FlakyService:
        def classify(self, request):
            calls["n"] += 1
            if calls["n"] == 1:
                return ClassifierResponse()
            return ClassifierResponse(results=[
                ClassifierResult(index=t.index, category_code="DIGER_OUT", confidence=0.9)
                for t in request.transactions
            ])

    outcome = await runner(FlakyService(), retry_policy, batch_size=10).classify(txns(3), categories)

    assert len(outcome.matched) == 3
    assert calls["n"] == 2
    assert fake_sleep.delays == [2.0]


async def test_unknown_and_duplicate_indices_are_ignored(categories, retry_policy):
    class NoisyService:
        def classify(self, request):
            return ClassifierResponse(results=[
                ClassifierResult(index=99, category_code="DIGER_OUT", confidence=0.9),
                ClassifierResult(index=0, category_code="BANKA", confidence=0.9),
                ClassifierResult(index=0, category_code="DIGER_OUT", confidence=0.9),
            ])

    outcome = await runner(NoisyService(), retry_policy).classify(txns(1), categories)

    assert [(r.transaction_index, r.category_code) for r in outcome.matched] == [(0, "BANKA")]
    assert outcome.unmatched == []


def test_split_sizes(retry_policy):
    service = StubClassifierService(lambda t: None)
    batches = runner(service, retry_policy, batch_size=25).split(txns(60))

    assert [len(b.transactions) for b in batches] == [25, 25, 10]
    assert [b.batch_index for b in batches] == [0, 1, 2]


async def test_impact_is_derived_from_category_not_classifier(categories, retry_policy):
    class Contradicting:
        def classify(self, request):
            return ClassifierResponse(results=[
                ClassifierResult(
                    index=t.index,
                    category_code="DIGER_OUT",
                    confidence=0.9,
                    affectsPnl=False,
                    balanceImpact="asset_increase",
                )
                for t in request.transactions
            ])

    outcome = await runner(Contradicting(), retry_policy).classify(txns(2), categories)

    assert [(r.affects_pnl, r.balance_impact) for r in outcome.matched] == [
        (True, "equity_decrease"),
        (True, "equity_decrease"),
    ]
