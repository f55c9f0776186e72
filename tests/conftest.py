"""
Shared fixtures. Environment is prepared before any application module reads settings.
"""
import os
import tempfile

import pytest

_STORAGE = tempfile.mkdtemp(prefix="bank-import-tests-")
os.environ.setdefault("LLM_API_KEY", "test-key")
os.environ["STORAGE_PATH"] = _STORAGE
os.environ["DATABASE_PATH"] = os.path.join(_STORAGE, "test.db")

from core.config import Settings, reset_settings  # noqa: E402
from core.retry import RetryPolicy  # noqa: E402
from core.schema import Category  # noqa: E402
from tests.helpers.stubs import FakeSleep  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def retry_policy(fake_sleep):
    return RetryPolicy(max_retries=3, base_delay=2.0, sleep=fake_sleep)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        batch_size=10,
        max_concurrent_batches=2,
        classifier_batch_size=25,
        classifier_concurrency=2,
        max_retries=3,
        retry_base_delay=2.0,
        storage_path=str(tmp_path),
        database_path=str(tmp_path / "import.db"),
    )


@pytest.fixture
def categories():
    return [
        Category(id="c-fee", code="BANKA", name="Bank charges", type="EXPENSE",
                 keywords=["KOMISYON", "EFT UCRETI"]),
        Category(id="c-salary", code="PERSONEL", name="Payroll", type="EXPENSE", keywords=["MAAS", "SGK"]),
        Category(id="c-rent-out", code="KIRA_OUT", name="Rent", type="EXPENSE", keywords=["KIRA"]),
        Category(id="c-rent-in", code="KIRA_IN", name="Rental income", type="INCOME", keywords=["KIRA GELIRI"]),
        Category(id="c-consult", code="DANIS", name="Consulting", type="INCOME", keywords=["DANISMANLIK"]),
        Category(id="c-other-out", code="DIGER_OUT", name="Other expenses", type="EXPENSE"),
        Category(id="c-other-in", code="DIGER_IN", name="Other income", type="INCOME"),
        Category(id="c-partner-in", code="ORTAK_IN", name="From partner", type="PARTNER"),
        Category(id="c-partner-out", code="ORTAK_OUT", name="To partner", type="PARTNER"),
        Category(id="c-loan-in", code="KREDI_IN", name="Loan", type="FINANCING", keywords=["KREDI KULLANDIRIM"]),
        Category(id="c-transfer", code="IC_TRANSFER", name="Internal transfer", type="EXCLUDED",
                 keywords=["VIRMAN"]),
    ]
