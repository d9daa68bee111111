"""Tests for the periodic date trigger scan."""

from datetime import datetime, time, timedelta

import pytest

from crm_workflows.core.date_trigger_scanner import DateTriggerScanner, within_preferred_window
from crm_workflows.models.core import ExecutionLog, ExecutionStatus, utc_now

TENANT = "tenant-1"
NOW = datetime(2026, 3, 10, 9, 0)


def date_trigger(field_name="renewal_date", offset=0, preferred_time=None):
    trigger = {"trigger_type": "dateBased", "field_name": field_name, "date_offset_days": offset}
    if preferred_time is not None:
        trigger["preferred_time"] = preferred_time
    return {"triggers": [trigger]}


@pytest.fixture
def scanner(repository, entity_store, job_queue):
    return DateTriggerScanner(repository, entity_store, job_queue, clock=lambda: NOW)


def enqueued_entities(job_queue):
    return sorted(job.context.entity_id for job in job_queue.pending_jobs)


class TestPreferredWindow:
    """Test cases for the preferred time of day window."""

    def test_no_preferred_time_always_matches(self):
        assert within_preferred_window(NOW, None)

    def test_within_and_outside_window(self):
        assert within_preferred_window(NOW, time(9, 25))
        assert within_preferred_window(NOW, time(8, 30))
        assert not within_preferred_window(NOW, time(9, 31))
        assert not within_preferred_window(NOW, time(14, 0))

    def test_window_wraps_midnight(self):
        """Test that 23:50 is within thirty minutes of 00:10."""
        assert within_preferred_window(datetime(2026, 3, 10, 23, 50), time(0, 10))
        assert within_preferred_window(datetime(2026, 3, 11, 0, 5), time(23, 45))

    def test_custom_window_size(self):
        assert within_preferred_window(NOW, time(10, 0), window_minutes=60)
        assert not within_preferred_window(NOW, time(10, 0), window_minutes=30)


class TestDateTriggerScan:
    """Test cases for selecting due records."""

    def test_offset_selects_records_due_in_offset_days(self, scanner, job_queue, entity_store, create_workflow):
        """Test that an offset of three days fires for records dated three days from today only."""
        workflow = create_workflow(date_trigger(offset=3))
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-13"}, entity_id="due")
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-12"}, entity_id="early")
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"}, entity_id="today")
        entity_store.create_record(TENANT, "Contact", {}, entity_id="no-date")

        assert scanner.scan() == 1

        job = job_queue.pending_jobs[0]
        assert job.context.entity_id == "due"
        assert job.context.workflow_id == workflow.id
        assert job.context.trigger_type == "DateBased"
        assert job.context.event_type == "DateBased:renewal_date"
        assert job.context.current_depth == 0

    def test_negative_offset_fires_after_date(self, scanner, job_queue, entity_store, create_workflow):
        create_workflow(date_trigger(offset=-2))
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-08"}, entity_id="past")
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-12"}, entity_id="future")

        scanner.scan()

        assert enqueued_entities(job_queue) == ["past"]

    def test_datetime_values_and_custom_fields(self, scanner, job_queue, entity_store, create_workflow):
        """Test that timestamps and custom fields are matched on their date."""
        create_workflow(date_trigger(field_name="custom.contract_end"))
        entity_store.create_record(
            TENANT, "Contact", {"custom": {"contract_end": "2026-03-10T17:30:00"}}, entity_id="custom"
        )
        entity_store.create_record(TENANT, "Contact", {"contract_end": "2026-03-10"}, entity_id="standard")

        scanner.scan()

        assert enqueued_entities(job_queue) == ["custom"]

    def test_records_of_other_tenants_ignored(self, scanner, job_queue, entity_store, create_workflow):
        create_workflow(date_trigger())
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"}, entity_id="mine")
        entity_store.create_record("tenant-2", "Contact", {"renewal_date": "2026-03-10"}, entity_id="theirs")
        entity_store.create_record(TENANT, "Deal", {"renewal_date": "2026-03-10"}, entity_id="deal")

        scanner.scan()

        assert enqueued_entities(job_queue) == ["mine"]

    def test_inactive_workflows_not_scanned(self, scanner, job_queue, entity_store, create_workflow):
        create_workflow(date_trigger(), active=False)
        create_workflow({"triggers": [{"trigger_type": "recordCreated"}]})
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"})

        assert scanner.scan() == 0
        assert job_queue.pending_jobs == []

    def test_outside_preferred_time_skips(self, scanner, entity_store, create_workflow):
        create_workflow(date_trigger(preferred_time="15:00:00"))
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"})

        assert scanner.scan() == 0

    def test_inside_preferred_time_fires(self, scanner, entity_store, create_workflow):
        create_workflow(date_trigger(preferred_time="09:15:00"))
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"})

        assert scanner.scan() == 1

    def test_failing_field_does_not_skip_other_triggers(
        self, scanner, job_queue, entity_store, create_workflow, monkeypatch
    ):
        """Test that a query failure on one date field still scans the workflow's other date fields."""
        create_workflow({"triggers": [
            {"trigger_type": "dateBased", "field_name": "broken_field"},
            {"trigger_type": "dateBased", "field_name": "close_date"},
        ]})
        entity_store.create_record(TENANT, "Contact", {"close_date": "2026-03-10"}, entity_id="due")
        find_entities = entity_store.find_entities_by_date

        def find_or_fail(tenant_id, entity_type, field_name, target_date):
            if field_name == "broken_field":
                raise RuntimeError("field query failed")
            return find_entities(tenant_id, entity_type, field_name, target_date)

        monkeypatch.setattr(entity_store, "find_entities_by_date", find_or_fail)

        assert scanner.scan() == 1
        assert enqueued_entities(job_queue) == ["due"]


class TestDuplicateSuppression:
    """Test cases for the one hour duplicate window."""

    def _log(self, workflow, entity_id, started_at, trigger_type="DateBased"):
        return ExecutionLog(
            tenant_id=TENANT,
            workflow_id=workflow.id,
            entity_id=entity_id,
            entity_type="Contact",
            trigger_type=trigger_type,
            trigger_event="DateBased:renewal_date",
            status=ExecutionStatus.SUCCEEDED,
            started_at=started_at,
        )

    def test_recent_execution_suppresses_trigger(self, scanner, repository, entity_store, create_workflow):
        workflow = create_workflow(date_trigger())
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"}, entity_id="c1")
        repository.save_execution_log(self._log(workflow, "c1", NOW - timedelta(minutes=10)))

        assert scanner.scan() == 0

    def test_older_execution_does_not_suppress(self, scanner, repository, entity_store, create_workflow):
        workflow = create_workflow(date_trigger())
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"}, entity_id="c1")
        repository.save_execution_log(self._log(workflow, "c1", NOW - timedelta(hours=2)))

        assert scanner.scan() == 1

    def test_event_triggered_execution_does_not_suppress(self, scanner, repository, entity_store, create_workflow):
        workflow = create_workflow(date_trigger())
        entity_store.create_record(TENANT, "Contact", {"renewal_date": "2026-03-10"}, entity_id="c1")
        repository.save_execution_log(self._log(workflow, "c1", NOW, trigger_type="RecordCreated"))

        assert scanner.scan() == 1

    def test_scan_then_execute_then_rescan(self, engine, job_queue, entity_store, repository, create_workflow, recorder):
        """Test that a run started by the scan suppresses the next scan within the hour."""
        create_workflow({
            **date_trigger(),
            "actions": [{
                "node_id": "a1",
                "action_type": "sendNotification",
                "config": {"title": "Renewal today", "recipient_type": "record_owner"},
            }],
        })
        entity_store.create_record(
            TENANT, "Contact", {"renewal_date": utc_now().date().isoformat(), "owner_id": "user-7"}, entity_id="c1"
        )
        scanner = DateTriggerScanner(repository, entity_store, job_queue)

        assert scanner.scan() == 1
        job_queue.run_pending()
        assert recorder.titles == ["Renewal today"]

        assert scanner.scan() == 0
