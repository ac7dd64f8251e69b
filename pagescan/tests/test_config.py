from __future__ import annotations

import json

from pagescan import main as cli
from pagescan.config import resolve_settings
from pagescan.fingerprint import detect_technologies
from pagescan.models import Artifact, ArtifactKind
from pagescan.orchestrator import ScanOrchestrator

from scan_samples import FakeHarvester, inline_script


def test_resolve_settings_defaults(monkeypatch):
    monkeypatch.delenv("PAGESCAN_MAX_CONCURRENT_SCANS", raising=False)
    monkeypatch.setenv("PAGESCAN_DB_PATH", "/tmp/scans.db")
    settings = resolve_settings()
    assert settings["paths"]["db_path"] == "/tmp/scans.db"
    assert settings["execution"]["max_concurrent_scans"] == 2
    assert settings["execution"]["max_queued_scans"] == 8
    assert settings["progress"]["console_capacity"] == 1000
    assert settings["stream"]["status_poll_seconds"] == 5.0
    assert settings["browser"]["wait_strategies"] == ["networkidle", "domcontentloaded", "load"]


def test_yaml_values_win_over_env(tmp_path, monkeypatch):
    monkeypatch.setenv("PAGESCAN_MAX_CONCURRENT_SCANS", "6")
    config = tmp_path / "settings.yaml"
    config.write_text("execution:\n  max_concurrent_scans: 1\nsuggestions:\n  enabled: false\n", encoding="utf-8")
    settings = resolve_settings(str(config))
    assert settings["execution"]["max_concurrent_scans"] == 1
    assert settings["suggestions"]["enabled"] is False
    assert settings["execution"]["max_queued_scans"] == 8


def test_detect_technologies_from_resource_urls():
    resources = [
        Artifact(kind=ArtifactKind.NETWORK_RESOURCE, location="https://shop.example.com/_next/static/chunks/main.js"),
        Artifact(kind=ArtifactKind.NETWORK_RESOURCE, location="https://js.stripe.com/v3/"),
    ]
    assert detect_technologies(resources) == ["Next.js", "Stripe.js"]


def test_cli_writes_report_and_exit_code(tmp_path, monkeypatch, capsys):
    harvester = FakeHarvester(scripts=[inline_script('const stripe_api_key = "sk_live_abc123";')])
    real_from_settings = ScanOrchestrator.from_settings.__func__

    def from_settings(cls, store, settings):
        orchestrator = real_from_settings(cls, store, settings)
        orchestrator.harvester_factory = lambda: harvester
        return orchestrator

    monkeypatch.setattr(ScanOrchestrator, "from_settings", classmethod(from_settings))
    output = tmp_path / "report.json"
    code = cli.main(["--url", "https://shop.example.com", "--scan-id", "cli-1", "--no-suggestions", "--json-output", str(output)])

    assert code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["result"]["scan_id"] == "cli-1"
    assert report["result"]["severity_counts"]["critical"] == 1
    assert "[100%] completed" in capsys.readouterr().err
