"""
Unit tests for storage layer.

Tests record serialization, JSON Lines appends, log rotation and
month-to-date aggregation.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from ai_gateway.storage.models import (
    Category,
    CodeQualityMetrics,
    Evidence,
    FindingSource,
    HallucinationFinding,
    InteractionRecord,
    Severity,
    VerificationResult,
    month_key,
    parse_timestamp,
    utc_timestamp,
)
from ai_gateway.storage.repository import InteractionRepository


def _record(request_id="req-1", timestamp="2026-10-05T12:00:00.000Z", provider="gemini",
            cost=0.25, task_type="chat", **kwargs) -> InteractionRecord:
    return InteractionRecord(
        request_id=request_id,
        timestamp=timestamp,
        provider=provider,
        model="gemini-2.5-flash",
        prompt_tokens=100,
        completion_tokens=50,
        total_tokens=150,
        cost_usd=cost,
        task_type=task_type,
        **kwargs
    )


def _verification() -> VerificationResult:
    finding = HallucinationFinding(
        category=Category.MAPPING,
        subtype="data_compliance",
        severity=Severity.HIGH,
        confidence=0.85,
        rule="type_mixing",
        description="Arithmetic between a number and a string",
        source=FindingSource.STATIC,
        evidence=(Evidence(type="code", content='result = x + "hello"', line_number=2),),
        line_numbers=(2,),
    )
    return VerificationResult(overall_rate=0.6375, findings=(finding,), language="python")


class TestTimestamps:
    """Test timestamp helpers."""

    def test_utc_timestamp_format(self):
        """Verify ISO-8601 UTC with milliseconds and a Z suffix."""
        moment = datetime(2026, 10, 5, 12, 30, 1, 123456, tzinfo=timezone.utc)
        assert utc_timestamp(moment) == "2026-10-05T12:30:01.123Z"

    def test_parse_timestamp_round_trips(self):
        """Verify Z-suffixed timestamps parse as UTC."""
        parsed = parse_timestamp("2026-10-05T12:30:01.123Z")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset().total_seconds() == 0

    def test_parse_naive_timestamp_as_utc(self):
        """Verify naive timestamps are treated as UTC."""
        assert month_key(parse_timestamp("2026-10-31T23:59:59")) == "2026-10"

    def test_month_key_uses_utc(self):
        """Verify month keys are computed in UTC."""
        from datetime import timedelta
        moment = datetime(2026, 11, 1, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        assert month_key(moment) == "2026-10"


class TestInteractionRecord:
    """Test InteractionRecord invariants and serialization."""

    def test_coding_record_requires_verification(self):
        """Verify coding records with code must carry a result."""
        with pytest.raises(ValueError):
            _record(task_type="coding", extracted_code="print(1)")

    def test_chat_record_rejects_verification(self):
        """Verify non-coding records cannot carry a result."""
        with pytest.raises(ValueError):
            _record(task_type="chat", verification_result=_verification())

    def test_coding_record_without_code_has_no_verification(self):
        """Verify coding requests without extracted code need no result."""
        record = _record(task_type="coding")
        assert record.verification_result is None

    def test_to_dict_uses_wire_keys(self):
        """Verify camelCase keys and omission of empty optionals."""
        data = _record().to_dict()

        assert data["requestId"] == "req-1"
        assert data["costUSD"] == 0.25
        assert data["taskType"] == "chat"
        assert "userPrompt" not in data
        assert "verificationResult" not in data

    def test_from_dict_restores_record(self):
        """Verify a stored coding record is restored with its verification."""
        record = _record(
            task_type="coding",
            extracted_code='x = 5\nresult = x + "hello"',
            code_language="python",
            verification_result=_verification(),
        )
        restored = InteractionRecord.from_dict(json.loads(json.dumps(record.to_dict())))

        assert restored == record
        assert restored.verification_result.findings[0].category == Category.MAPPING

    def test_quality_scores_round_trip(self):
        """Verify code quality fields survive serialization."""
        metrics = CodeQualityMetrics(
            syntax_valid=True,
            lines_of_code=2,
            complexity=1.5,
            has_functions=True,
            readability=7.5,
            potential_issues=("Syntax errors detected",),
            language="python",
        )
        record = _record(
            task_type="coding",
            extracted_code="def f():\n    return 1",
            verification_result=_verification(),
            code_quality_metrics=metrics,
            code_quality_score=90,
            effectiveness_score=71,
        )
        data = json.loads(json.dumps(record.to_dict()))

        assert data["codeQualityScore"] == 90
        assert data["codeQualityMetrics"]["estimatedReadability"] == 7.5
        assert InteractionRecord.from_dict(data) == record

    def test_quality_requires_code(self):
        """Verify chat records cannot carry quality scores."""
        with pytest.raises(ValueError):
            _record(task_type="chat", code_quality_score=80)

    @pytest.mark.parametrize("score", [-1, 101])
    def test_effectiveness_score_range(self, score):
        """Verify scores are on a 0-100 scale."""
        with pytest.raises(ValueError):
            _record(
                task_type="coding",
                extracted_code="print(1)",
                verification_result=_verification(),
                effectiveness_score=score,
            )


class TestInteractionRepository:
    """Test the JSON Lines interaction log."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.log_path = os.path.join(self.temp_dir, "interactions.log")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_append_writes_one_line_per_record(self):
        """Verify each record is one newline-terminated JSON line."""
        repository = InteractionRepository(self.log_path)
        repository.append(_record("a"))
        repository.append(_record("b"))

        with open(self.log_path, encoding="utf-8") as f:
            lines = f.readlines()
        assert len(lines) == 2
        assert all(line.endswith("\n") for line in lines)
        assert [json.loads(line)["requestId"] for line in lines] == ["a", "b"]

    def test_append_creates_parent_directory(self):
        """Verify the log directory is created on first append."""
        nested = os.path.join(self.temp_dir, "logs", "interactions.log")
        InteractionRepository(nested).append(_record())
        assert os.path.exists(nested)

    def test_malformed_lines_are_skipped(self):
        """Verify partial and invalid lines never break reads."""
        repository = InteractionRepository(self.log_path)
        repository.append(_record("good", cost=1.0))
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write("not json\n")
            f.write('{"requestId": "missing-fields"}\n')
            f.write('{"requestId": "partial", "timest')

        records = list(repository.iter_records())
        assert [record.request_id for record in records] == ["good"]
        assert repository.monthly_spend("2026-10").total == 1.0

    def test_month_summary_filters_by_month(self):
        """Verify only records of the requested month are counted."""
        repository = InteractionRepository(self.log_path)
        repository.append(_record("sep", timestamp="2026-09-30T23:59:59.999Z", cost=5.0))
        repository.append(_record("oct-1", provider="gemini", cost=1.5))
        repository.append(_record("oct-2", provider="openai", cost=2.0, task_type="coding"))

        summary = repository.month_summary("2026-10")
        assert summary.totals.total == pytest.approx(3.5)
        assert summary.totals.by_provider == {"gemini": 1.5, "openai": 2.0}
        assert summary.interaction_count == 2
        assert summary.coding_interactions == 1

    def test_month_summary_averages_quality_scores(self):
        """Verify quality and effectiveness are averaged over scored coding records."""
        repository = InteractionRepository(self.log_path)
        for request_id, quality, effectiveness in (("a", 90, 70), ("b", 70, None)):
            repository.append(_record(
                request_id,
                task_type="coding",
                extracted_code="print(1)",
                verification_result=_verification(),
                code_quality_score=quality,
                effectiveness_score=effectiveness,
            ))
        repository.append(_record("chat"))

        summary = repository.month_summary("2026-10")
        assert summary.average_quality_score == pytest.approx(80.0)
        assert summary.average_effectiveness_score == pytest.approx(70.0)
        assert repository.month_summary("2026-09").average_quality_score is None

    def test_empty_log(self):
        """Verify a missing log yields zero totals."""
        repository = InteractionRepository(self.log_path)
        assert repository.monthly_spend("2026-10").total == 0.0
        assert repository.recent() == []

    def test_rotation_renames_oversized_log(self):
        """Verify the log is rotated after an append pushes it over the limit."""
        repository = InteractionRepository(self.log_path, rotate_bytes=200)
        rotated = repository.append(_record("first"))

        assert rotated is not None
        assert rotated.name.startswith("interactions.")
        assert rotated.suffix == ".log"
        assert rotated.stem.split(".")[1].isdigit()
        assert not os.path.exists(self.log_path)

    def test_no_rotation_below_limit(self):
        """Verify small logs are left in place."""
        repository = InteractionRepository(self.log_path)
        assert repository.append(_record()) is None
        assert repository.rotated_files() == []

    def test_rotation_keeps_month_to_date_spend(self):
        """Verify rotated files still count toward the current month."""
        now = datetime.now(timezone.utc)
        repository = InteractionRepository(self.log_path, rotate_bytes=200)
        repository.append(_record("a", timestamp=utc_timestamp(now), cost=1.0))
        repository.append(_record("b", timestamp=utc_timestamp(now), cost=2.0))

        assert len(repository.rotated_files()) == 2
        assert repository.monthly_spend(month_key(now)).total == pytest.approx(3.0)

    def test_old_rotated_files_are_not_scanned(self):
        """Verify rotated files last modified before the month are skipped."""
        repository = InteractionRepository(self.log_path, rotate_bytes=200)
        rotated = repository.append(_record("oct", cost=1.0))
        august = datetime(2026, 8, 15, tzinfo=timezone.utc).timestamp()
        os.utime(rotated, (august, august))

        assert repository.log_files(modified_since=datetime(2026, 10, 1, tzinfo=timezone.utc).timestamp()) == []
        assert repository.monthly_spend("2026-10").total == 0.0

    def test_rotated_file_deleted_after_listing_is_skipped(self):
        """Verify a rotated file removed mid-scan does not break spend totals."""
        now = datetime.now(timezone.utc)
        repository = InteractionRepository(self.log_path, rotate_bytes=200)
        rotated = repository.append(_record("a", timestamp=utc_timestamp(now), cost=1.0))
        os.remove(rotated)

        with patch.object(InteractionRepository, "rotated_files", return_value=[rotated]):
            assert repository.log_files(modified_since=0.0) == []
            assert repository.monthly_spend(month_key(now)).total == 0.0

    def test_recent_returns_newest_records(self):
        """Verify recent() keeps the last records in order."""
        repository = InteractionRepository(self.log_path)
        for index in range(15):
            repository.append(_record(f"req-{index}"))

        recent = repository.recent(10)
        assert len(recent) == 10
        assert recent[0].request_id == "req-5"
        assert recent[-1].request_id == "req-14"

    def test_concurrent_appends_do_not_interleave(self):
        """Verify parallel appends produce only whole records."""
        repository = InteractionRepository(self.log_path)

        def writer(prefix):
            for index in range(25):
                repository.append(_record(f"{prefix}-{index}", user_prompt="x" * 500))

        threads = [threading.Thread(target=writer, args=(name,)) for name in "abcd"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(list(repository.iter_records())) == 100
