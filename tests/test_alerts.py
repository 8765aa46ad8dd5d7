import httpx

from hgd import alerts
from hgd.runtime import AttemptState, DeploymentAttempt, Outcome, Release
from hgd.settings import Settings


def _attempt(state=AttemptState.ROLLED_BACK, outcome=Outcome.ROLLED_BACK) -> DeploymentAttempt:
    a = DeploymentAttempt(id="a1", release=Release(artifact_ref="app:2", environment="staging"), state=state)
    a.outcome = outcome
    a.backup_ref = "snap-1"
    a.cause = {"kind": "HealthCheckExhausted", "message": "not healthy after 3 probe(s)"}
    return a


def test_webhook_disabled_without_url(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(webhook_url=None))
    assert alerts.post_webhook({"x": 1}) is False


def test_webhook_posts_json(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(webhook_url="http://hooks.local/deploy"))
    seen = []

    def handler(request):
        seen.append((str(request.url), request.read()))
        return httpx.Response(204)

    assert alerts.post_webhook({"attempt_id": "a1"}, transport=httpx.MockTransport(handler)) is True
    assert seen[0][0] == "http://hooks.local/deploy"
    assert b'"attempt_id"' in seen[0][1]


def test_webhook_error_status_is_false(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(webhook_url="http://hooks.local/deploy"))
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    assert alerts.post_webhook({}, transport=transport) is False


def test_outcome_summary():
    s = alerts.outcome_summary(_attempt())
    assert s["message"] == "Deployment to staging ended ROLLED_BACK"
    assert s["outcome"] == "rolledBack"
    assert s["cause"]["kind"] == "HealthCheckExhausted"
    assert s["backup_ref"] == "snap-1"


def test_failed_outcome_mentions_manual_recovery(monkeypatch):
    mails = []
    monkeypatch.setattr(alerts, "send_email", lambda subject, body: mails.append((subject, body)) or True)
    monkeypatch.setattr(alerts, "post_webhook", lambda payload: False)

    assert alerts.notify_outcome(_attempt(AttemptState.FAILED, Outcome.FAILED)) is True
    subject, body = mails[0]
    assert "staging" in subject and "FAILED" in subject
    assert "restore backup snap-1" in body


def test_no_channels_configured(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=False, webhook_url=None))
    assert alerts.notify_outcome(_attempt()) is False
