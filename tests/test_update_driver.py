from datetime import datetime, timezone

import pytest

from wafvisits.aggregate.driver import apply_update, last_complete_second, page_limit, plan_update, require_codes
from wafvisits.errors import NoCodesSpecified, SiteMismatch, UpstreamFailure, WhoIsFailure
from wafvisits.imperva.models import Visit, VisitBatch, to_epoch_ms
from wafvisits.storage.snapshot import load_snapshot, new_snapshot, save_snapshot


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FakeVisitSource:
    def __init__(self, visits=(), error=None):
        self.calls = []
        self._visits = list(visits)
        self._error = error

    def get_visits(self, site_id, start, end, max_pages, codes=()):
        self.calls.append({"site_id": site_id, "start": start, "end": end, "max_pages": max_pages, "codes": list(codes)})
        if self._error is not None:
            raise self._error
        return VisitBatch(visits=list(self._visits))


class FakeWhois:
    def __init__(self, failing=()):
        self.calls = []
        self._failing = set(failing)

    def lookup(self, ip):
        self.calls.append(ip)
        if ip in self._failing:
            raise WhoIsFailure(ip, "timed out")
        return {"OrgName": f"Org {ip}"}


def _visit(ip, when, page="/login"):
    return Visit(clientIPs=[ip], entryPage=page, startTime=to_epoch_ms(when))


def test_last_complete_second_excludes_today():
    assert last_complete_second(_utc(2024, 3, 15, 10, 0, 0)) == _utc(2024, 3, 14, 23, 59, 59)
    assert last_complete_second(_utc(2024, 3, 15, 0, 0, 0)) == _utc(2024, 3, 14, 23, 59, 59)


def test_fresh_snapshot_covers_thirty_days(tmp_path):
    path = tmp_path / "s.db"
    source = FakeVisitSource([_visit("1.2.3.4", _utc(2024, 3, 1, 12))])
    plan = plan_update(path, "A", now=_utc(2024, 3, 15, 10, 0, 0))

    assert plan.created
    assert plan.start == _utc(2024, 2, 13, 0, 0, 0)
    assert plan.end == _utc(2024, 3, 14, 23, 59, 59)
    assert not path.exists()

    folded = apply_update(plan, codes=["R1"], visit_source=source, whois=FakeWhois())
    assert folded == 1
    assert source.calls == [
        {"site_id": "A", "start": plan.start, "end": plan.end, "max_pages": 1000, "codes": ["R1"]}
    ]

    saved = load_snapshot(path, "A")
    assert saved.site_id == "A"
    assert saved.last_update == _utc(2024, 3, 14, 23, 59, 59)
    assert saved.data["1.2.3.4"].hits == 1


def test_up_to_date_snapshot_is_left_alone(tmp_path):
    path = tmp_path / "s.db"
    first = plan_update(path, "A", now=_utc(2024, 3, 15, 10))
    apply_update(first, codes=["R1"], visit_source=FakeVisitSource(), whois=FakeWhois())
    before = path.read_bytes()
    mtime = path.stat().st_mtime_ns

    plan = plan_update(path, "A", now=_utc(2024, 3, 15, 6))
    assert plan.up_to_date
    source = FakeVisitSource()
    assert apply_update(plan, codes=["R1"], visit_source=source, whois=FakeWhois()) == 0
    assert source.calls == []
    assert path.read_bytes() == before
    assert path.stat().st_mtime_ns == mtime


def test_next_run_resumes_after_watermark(tmp_path):
    path = tmp_path / "s.db"
    whois = FakeWhois()
    first = plan_update(path, "A", now=_utc(2024, 3, 15, 10))
    apply_update(first, codes=["R1"], visit_source=FakeVisitSource([_visit("1.1.1.1", _utc(2024, 3, 10))]), whois=whois)

    second = plan_update(path, "A", now=_utc(2024, 3, 17, 1))
    assert not second.created
    assert second.start == _utc(2024, 3, 15, 0, 0, 0)
    assert second.end == _utc(2024, 3, 16, 23, 59, 59)
    apply_update(second, codes=["R1"], visit_source=FakeVisitSource([_visit("1.1.1.1", _utc(2024, 3, 16))]), whois=whois)

    saved = load_snapshot(path, "A")
    assert saved.last_update == _utc(2024, 3, 16, 23, 59, 59)
    assert saved.last_update > first.end
    assert saved.data["1.1.1.1"].hits == 2
    assert saved.data["1.1.1.1"].pages[0].last_access == _utc(2024, 3, 16)
    assert saved.data["1.1.1.1"].pages[0].last_access < _utc(2024, 3, 17)
    assert whois.calls == ["1.1.1.1"]


def test_stored_snapshot_never_updated_gets_initial_window(tmp_path):
    path = tmp_path / "s.db"
    save_snapshot(new_snapshot("A", path))

    plan = plan_update(path, "A", now=_utc(2024, 3, 15, 10))
    assert not plan.created
    assert plan.start == _utc(2024, 2, 13, 0, 0, 0)
    assert plan.end == _utc(2024, 3, 14, 23, 59, 59)


def test_site_mismatch_leaves_file_untouched(tmp_path):
    path = tmp_path / "s.db"
    apply_update(plan_update(path, "A", now=_utc(2024, 3, 15, 10)), codes=["R1"], visit_source=FakeVisitSource(), whois=FakeWhois())
    before = path.read_bytes()

    with pytest.raises(SiteMismatch) as excinfo:
        plan_update(path, "B", now=_utc(2024, 3, 20))
    assert "A" in str(excinfo.value) and "B" in str(excinfo.value)
    assert path.read_bytes() == before


@pytest.mark.parametrize(
    "source, whois, error",
    [
        (FakeVisitSource([_visit("1.1.1.1", _utc(2024, 3, 16)), _visit("6.6.6.6", _utc(2024, 3, 16))]), FakeWhois(failing={"6.6.6.6"}), WhoIsFailure),
        (FakeVisitSource(error=UpstreamFailure("visits request returned HTTP 500")), FakeWhois(), UpstreamFailure),
    ],
)
def test_failed_run_does_not_persist(tmp_path, source, whois, error):
    path = tmp_path / "s.db"
    apply_update(plan_update(path, "A", now=_utc(2024, 3, 15, 10)), codes=["R1"], visit_source=FakeVisitSource(), whois=FakeWhois())
    before = path.read_bytes()

    plan = plan_update(path, "A", now=_utc(2024, 3, 17, 10))
    with pytest.raises(error):
        apply_update(plan, codes=["R1"], visit_source=source, whois=whois)

    assert path.read_bytes() == before
    assert load_snapshot(path, "A").last_update == _utc(2024, 3, 14, 23, 59, 59)


def test_failed_first_run_creates_no_file(tmp_path):
    path = tmp_path / "s.db"
    plan = plan_update(path, "A", now=_utc(2024, 3, 15, 10))
    with pytest.raises(WhoIsFailure):
        apply_update(
            plan,
            codes=["R1"],
            visit_source=FakeVisitSource([_visit("6.6.6.6", _utc(2024, 3, 1))]),
            whois=FakeWhois(failing={"6.6.6.6"}),
        )
    assert not path.exists()


def test_codes_are_required_before_fetching(tmp_path):
    source = FakeVisitSource()
    plan = plan_update(tmp_path / "s.db", "A", now=_utc(2024, 3, 15, 10))
    with pytest.raises(NoCodesSpecified):
        apply_update(plan, codes=[], visit_source=source, whois=FakeWhois())
    assert source.calls == []
    with pytest.raises(NoCodesSpecified):
        require_codes(None)
    assert require_codes(["R1", "", "R2"]) == ["R1", "R2"]


def test_page_limit_defaults():
    assert page_limit(None, 1000) == 1000
    assert page_limit(0, 1000) == 1000
    assert page_limit(-3, 10) == 10
    assert page_limit(5, 1000) == 5
