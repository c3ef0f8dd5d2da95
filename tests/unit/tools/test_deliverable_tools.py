"""
Unit tests for the save_deliverable tool.
"""

import json

import pytest

from ember.memory.database import get_store
from ember.tools import TOOLS, call_tool, get_tool
from ember.tools.base import ToolResult, handle_tool_errors
from ember.tools.deliverables import (
    DELIVERABLE_FILENAMES,
    DeliverableType,
    deliverable_schema,
    save_deliverable,
    vulnerability_payload,
)

QUEUE = {
    "vulnerabilities": [
        {
            "ID": "INJ-VULN-01",
            "type": "injection",
            "source": "app/routes/users.py:42",
            "location": "/api/users?sort=",
            "sink": "cursor.execute",
            "confidence": 90,
            "description": "Unsanitised sort parameter",
        },
        {
            "ID": "INJ-VULN-02",
            "source": "app/routes/orders.py:10",
            "location": "/api/orders",
            "confidence": 60,
        },
    ]
}


class TestDeliverableTypes:
    """Test the deliverable type catalogue."""

    def test_every_type_has_a_filename(self):
        """Eighteen deliverable types, one file each."""
        assert len(DeliverableType) == 18
        assert set(DELIVERABLE_FILENAMES) == set(DeliverableType)
        assert DELIVERABLE_FILENAMES[DeliverableType.XSS_QUEUE] == "xss_exploitation_queue.json"

    def test_type_properties(self):
        """Queue/evidence flags and vuln type derive from the name."""
        assert DeliverableType.AUTH_QUEUE.is_queue
        assert DeliverableType.SSRF_EVIDENCE.is_evidence
        assert DeliverableType.AUTHZ_ANALYSIS.vuln_type == "authz"
        assert DeliverableType.RECON.vuln_type is None

    def test_schema_lists_types(self):
        """The input schema advertises every type."""
        schema = deliverable_schema()
        assert schema["required"] == ["deliverable_type", "content"]
        assert len(schema["properties"]["deliverable_type"]["enum"]) == 18


class TestSaveDeliverable:
    """Test writing deliverables and feeding exploit memory."""

    @pytest.mark.asyncio
    async def test_markdown_written(self, run_context):
        """Analyses are written to the deliverables folder."""
        result = await save_deliverable(run_context, "RECON", "# Recon\n")

        assert result.success is True
        path = run_context.deliverables_dir / "recon_deliverable.md"
        assert path.read_text() == "# Recon\n"
        assert result.data["validated"] is False
        assert result.artifacts == [str(path)]

    @pytest.mark.asyncio
    async def test_invalid_queue_not_written(self, run_context):
        """A malformed queue is rejected before touching disk."""
        result = await save_deliverable(run_context, "INJECTION_QUEUE", '{"findings": []}')

        assert result.success is False
        assert "vulnerabilities" in result.error
        assert result.metadata["kind"] == "validation"
        assert not (run_context.deliverables_dir / "injection_exploitation_queue.json").exists()

    @pytest.mark.asyncio
    async def test_unknown_type(self, run_context):
        """Unknown deliverable types fail with the valid list."""
        result = await save_deliverable(run_context, "NOTES", "text")

        assert result.success is False
        assert "NOTES" in result.error
        assert "RECON" in result.metadata["context"]["valid_types"]

    @pytest.mark.asyncio
    async def test_empty_content(self, run_context):
        """Empty content is refused."""
        result = await save_deliverable(run_context, "RECON", "")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_queue_findings_saved_to_memory(self, run_context):
        """Valid queues record their findings in exploit memory."""
        result = await save_deliverable(run_context, "INJECTION_QUEUE", json.dumps(QUEUE))

        assert result.success is True
        assert result.data["validated"] is True
        assert result.data["exploit_memory_saved"] == 2

        store = get_store(run_context.hostname, run_context.settings.exploit_memory.db_dir)
        vulns = store.query_vulnerabilities()
        assert {v["vuln_type"] for v in vulns} == {"injection"}
        assert {v["session_id"] for v in vulns} == {run_context.session_id}

    @pytest.mark.asyncio
    async def test_duplicate_queue_keeps_one_row_per_finding(self, run_context):
        """Saving the same queue twice does not duplicate findings."""
        await save_deliverable(run_context, "INJECTION_QUEUE", json.dumps(QUEUE))
        await save_deliverable(run_context, "INJECTION_QUEUE", json.dumps(QUEUE))

        store = get_store(run_context.hostname, run_context.settings.exploit_memory.db_dir)
        assert store.count_vulnerabilities() == 2

    @pytest.mark.asyncio
    async def test_empty_queue_skips_memory(self, run_context):
        """An empty queue is saved without touching exploit memory."""
        result = await save_deliverable(run_context, "XSS_QUEUE", '{"vulnerabilities": []}')

        assert result.success is True
        assert "exploit_memory_saved" not in result.data

    @pytest.mark.asyncio
    async def test_evidence_credentials_extracted(self, run_context):
        """Credentials in evidence are recorded masked."""
        evidence = "# Evidence\nusername: alice, password: Spring2024!\n"
        result = await save_deliverable(run_context, "AUTH_EVIDENCE", evidence)

        assert result.data["credentials_found"] == 1
        store = get_store(run_context.hostname, run_context.settings.exploit_memory.db_dir)
        [credential] = store.get_credentials()
        assert credential["username"] == "alice"
        assert "Spring2024!" not in json.dumps(credential)

    @pytest.mark.asyncio
    async def test_memory_disabled(self, run_context):
        """With exploit memory off only the file is written."""
        run_context.settings.exploit_memory.enabled = False
        result = await save_deliverable(run_context, "INJECTION_QUEUE", json.dumps(QUEUE))

        assert result.success is True
        assert "exploit_memory_saved" not in result.data

    def test_vulnerability_payload_mapping(self):
        """Queue keys map onto the finding layout with fallbacks."""
        payload = vulnerability_payload("h", QUEUE["vulnerabilities"][1], default_vuln_type="injection")

        assert payload["vuln_type"] == "injection"
        assert payload["path"] == "/api/orders"
        assert payload["sink_call"] is None
        assert payload["exploitation_data"] == {"description": None, "impact": None, "remediation": None}


class TestToolPlumbing:
    """Test the tool registry and error decorator."""

    def test_registry(self):
        """All four tools are registered."""
        assert set(TOOLS) == {"save_deliverable", "verify_remediation", "save_exploit_result", "query_exploit_memory"}
        with pytest.raises(KeyError, match="Tool 'nope' not found"):
            get_tool("nope")

    @pytest.mark.asyncio
    async def test_call_tool_by_name(self, run_context):
        """call_tool forwards keyword arguments."""
        result = await call_tool("save_deliverable", run_context, deliverable_type="RECON", content="# R\n")
        assert result.success is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failure(self):
        """Non-PentestErrors are reported, not raised."""

        @handle_tool_errors("broken")
        async def broken():
            raise RuntimeError("kaboom")

        result = await broken()
        assert result.success is False
        assert result.error == "Tool execution failed: kaboom"
        assert json.loads(result.to_content())["status"] == "error"
        assert result.metadata["retryable"] is False
        assert result.metadata["context"]["tool"] == "broken"

    @pytest.mark.asyncio
    async def test_transient_exception_marked_retryable(self):
        """Connection drops inside a tool are classified like any tool failure."""

        @handle_tool_errors("fetch")
        async def fetch():
            raise ConnectionResetError("connection reset by peer")

        result = await fetch()
        assert result.success is False
        assert result.metadata["kind"] == "tool"
        assert result.metadata["retryable"] is True
        assert result.metadata["exception"] == "ConnectionResetError"

    @pytest.mark.asyncio
    async def test_plain_return_wrapped(self):
        """Tools returning something else are wrapped in a ToolResult."""

        @handle_tool_errors("plain")
        async def plain():
            return "hello"

        result = await plain()
        assert isinstance(result, ToolResult)
        assert result.output == "hello"

    def test_success_content(self):
        """Successful results serialise message and data."""
        content = json.loads(ToolResult(success=True, output="ok", data={"n": 1}).to_content())
        assert content == {"status": "success", "message": "ok", "n": 1}
