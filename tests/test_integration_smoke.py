import os
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import qdrls  # noqa: E402


def test_integration_smoke_query_links():
    """
    Opt-in integration smoke test against a running router.

    Skipped by default so CI and casual contributors don't need a broker.
    """
    if os.getenv("QDRLS_INTEGRATION") != "1":
        pytest.skip("set QDRLS_INTEGRATION=1 to enable integration smoke tests")

    cfg = qdrls.load_config()
    link = qdrls.resolve_entity("link")
    selection = qdrls.build_attribute_selection("identity,linkType,linkDir", link)
    request = qdrls.build_request(link, selection)

    with qdrls.ManagementClient(cfg.url, cfg.username, cfg.password, timeout=10) as client:
        result = qdrls.interpret_message(client.query(request))

    # The management link itself is always present.
    assert result.header == ["identity", "linkType", "linkDir"]
    assert len(result.rows) >= 1
    lines = qdrls.align(qdrls.render_lines(result, selection))
    assert lines[0].split() == ["ID", "TYPE", "DIR"]
