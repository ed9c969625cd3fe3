"""Tests for outcomes and the final report."""

from rcommand.summary import FAILURE_EXIT_CODE, Outcome, Summary


def outcomes(*items):
    return {o.host: o for o in items}


class TestOutcome:
    def test_success_needs_zero_and_no_signal(self):
        assert Outcome(host="a", exit_code=0).succeeded
        assert not Outcome(host="a", exit_code=1).succeeded
        assert not Outcome(host="a", exit_code=0, signal="TERM").succeeded

    def test_failure_uses_sentinel(self):
        outcome = Outcome.failure("a", "ConnectFailure: refused")
        assert outcome.exit_code == FAILURE_EXIT_CODE == 255
        assert outcome.reason == "ConnectFailure: refused"

    def test_reason(self):
        assert Outcome(host="a", exit_code=2).reason == "exit 2"
        assert Outcome(host="a", exit_code=255, signal="KILL").reason == "signal KILL"


class TestSummary:
    """Test partitioning and rendering."""

    def test_partition_sorted_by_host(self):
        summary = Summary.from_outcomes(
            outcomes(
                Outcome(host="web3", exit_code=0),
                Outcome(host="db1", exit_code=1),
                Outcome(host="web1", exit_code=0),
                Outcome(host="app1", exit_code=0, signal="HUP"),
            )
        )

        assert [o.host for o in summary.succeeded] == ["web1", "web3"]
        assert [o.host for o in summary.failed] == ["app1", "db1"]
        assert summary.exit_status == 1

    def test_all_succeeded(self):
        summary = Summary.from_outcomes(outcomes(Outcome(host="a", exit_code=0)))
        assert summary.exit_status == 0

    def test_host_in_exactly_one_set(self):
        items = [Outcome(host=f"h{i}", exit_code=i % 3) for i in range(9)]
        summary = Summary.from_outcomes(outcomes(*items))

        succeeded = {o.host for o in summary.succeeded}
        failed = {o.host for o in summary.failed}
        assert succeeded.isdisjoint(failed)
        assert succeeded | failed == {o.host for o in items}
        assert succeeded == {o.host for o in items if o.exit_code == 0}

    def test_render_plain(self):
        summary = Summary.from_outcomes(
            outcomes(Outcome(host="b", exit_code=1), Outcome(host="a", exit_code=0))
        )
        assert summary.render() == "SUCCESS a\nFAIL b (exit 1)"

    def test_render_color(self):
        summary = Summary.from_outcomes(outcomes(Outcome(host="a", exit_code=0)))
        assert summary.render(color=True) == "\033[32mSUCCESS\033[0m a"

    def test_render_empty(self):
        assert Summary.from_outcomes({}).render() == ""
