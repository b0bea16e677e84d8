import pytest


_THROUGHPUT_METRICS = []


@pytest.fixture(scope="session")
def throughput_recorder():
    def _record(entry):
        _THROUGHPUT_METRICS.append(entry)

    return _record


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    if not _THROUGHPUT_METRICS:
        return
    terminalreporter.section("Dense CRF throughput", sep="-")
    baseline_record = next((record for record in _THROUGHPUT_METRICS if record.get("is_baseline")), _THROUGHPUT_METRICS[0])
    baseline_tp = baseline_record.get("throughput", 0.0) or 0.0
    for record in _THROUGHPUT_METRICS:
        throughput = record.get("throughput", 0.0)
        elapsed = record.get("elapsed", 0.0)
        label = record.get("label", "run")
        backend = record.get("backend", "unknown")
        if record is baseline_record:
            delta_label = "(baseline)"
        elif baseline_tp > 0:
            delta_label = f"({((throughput / baseline_tp) - 1.0) * 100.0:+.1f}% throughput)"
        else:
            delta_label = ""
        terminalreporter.line(
            f"{label} [{backend}]: {throughput:,.0f} px/s ({elapsed*1000:.1f} ms) {delta_label}"
        )
