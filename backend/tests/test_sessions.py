import time

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from companion_api.auth import CurrentUser
from companion_api.config import settings
from companion_api.database import engine
from companion_api.errors import Conflict
from companion_api.main import app
from companion_api.providers import get_voice_client
from companion_api.services import SessionService, reconcile_call_id
from companion_api.utils.retry import poll_until_present

client = TestClient(app)


class FakeVoice:
    """Stands in for the voice provider; calls appear after `appear_after` lookups."""
    def __init__(self, calls=None, transcripts=None, appear_after=0):
        self.calls = calls or {}
        self.transcripts = transcripts or {}
        self.appear_after = appear_after
        self.lookups = 0

    def find_call_id(self, session_id):
        self.lookups += 1
        if self.lookups <= self.appear_after:
            return None
        return self.calls.get(session_id)

    def fetch_transcript(self, call_id):
        return self.transcripts.get(call_id)


def _companion(headers):
    r = client.post('/api/companions', headers=headers, json={
        "name": "History Helper", "subject": "history", "topic": "The Romans",
        "voice": "male", "style": "casual", "duration": 10,
    })
    assert r.status_code == 201, r.text
    return r.json()


def _start(headers, companion_id):
    r = client.post('/api/sessions', headers=headers, json={'companionId': companion_id})
    assert r.status_code == 201, r.text
    return r.json()


def test_start_returns_assistant_with_session_metadata(auth_headers):
    h = auth_headers()
    companion = _companion(h)
    started = _start(h, companion['id'])
    session = started['session']
    assert session['call_id'] is None
    assert session['companion_id'] == companion['id']
    meta = started['assistant']['assistantOverrides']['metadata']
    assert meta == {'sessionId': str(session['id']), 'companionId': str(companion['id'])}


def test_start_requires_owned_companion(auth_headers):
    companion = _companion(auth_headers())
    r = client.post('/api/sessions', headers=auth_headers(), json={'companionId': companion['id']})
    assert r.status_code == 403
    r = client.post('/api/sessions', headers=auth_headers(), json={'companionId': 999999})
    assert r.status_code == 404


def test_link_is_idempotent_and_conflicts_on_new_id(auth_headers):
    h = auth_headers()
    session_id = _start(h, _companion(h)['id'])['session']['id']

    r = client.patch(f'/api/sessions/{session_id}', headers=h, json={'callId': 'call-1'})
    assert r.status_code == 200
    assert r.json()['call_id'] == 'call-1'
    # the client reports the id on several call events
    r = client.patch(f'/api/sessions/{session_id}', headers=h, json={'callId': 'call-1'})
    assert r.status_code == 200
    r = client.patch(f'/api/sessions/{session_id}', headers=h, json={'callId': 'call-2'})
    assert r.status_code == 409
    assert 'call-1' in r.json()['error']


def test_link_other_users_session(auth_headers):
    h = auth_headers()
    session_id = _start(h, _companion(h)['id'])['session']['id']
    r = client.patch(f'/api/sessions/{session_id}', headers=auth_headers(), json={'callId': 'x'})
    assert r.status_code == 403
    assert client.patch('/api/sessions/999999', headers=h, json={'callId': 'x'}).status_code == 404


def test_transcript_list_only_contains_linked_sessions(auth_headers):
    h = auth_headers()
    companion = _companion(h)
    linked = _start(h, companion['id'])['session']['id']
    unlinked = _start(h, companion['id'])['session']['id']
    client.patch(f'/api/sessions/{linked}', headers=h, json={'callId': f'call-{linked}'})

    rows = client.get('/api/sessions/transcripts', headers=h).json()
    assert [r['id'] for r in rows] == [linked]
    assert rows[0]['companion']['name'] == "History Helper"

    recent = client.get('/api/sessions', headers=h).json()
    assert {r['id'] for r in recent} == {linked, unlinked}


def test_history_fetches_transcript_for_own_call(auth_headers, overrides):
    voice = FakeVoice(transcripts={'call-hist': 'AI: Welcome to Rome.'})
    overrides[get_voice_client] = lambda: voice
    h = auth_headers()
    session_id = _start(h, _companion(h)['id'])['session']['id']
    client.patch(f'/api/sessions/{session_id}', headers=h, json={'callId': 'call-hist'})

    r = client.get('/api/history/call-hist', headers=h)
    assert r.status_code == 200
    assert r.json() == {'callId': 'call-hist', 'sessionId': session_id, 'transcript': 'AI: Welcome to Rome.'}
    assert client.get('/api/history/call-hist', headers=auth_headers()).status_code == 404


def test_history_needs_plan_with_transcripts(auth_headers, overrides):
    overrides[get_voice_client] = lambda: FakeVoice()
    r = client.get('/api/history/call-any', headers=auth_headers(plan=None))
    assert r.status_code == 403


def test_poll_until_present_backs_off_and_stops():
    delays = []
    answers = iter([None, None, "call-9"])
    value, attempts = poll_until_present(lambda: next(answers), max_attempts=5, base_delay=1.0, sleep=delays.append)
    assert (value, attempts) == ("call-9", 3)
    assert delays == [1.0, 2.0]

    delays.clear()
    value, attempts = poll_until_present(lambda: None, max_attempts=4, base_delay=1.0, max_delay=3.0, sleep=delays.append)
    assert (value, attempts) == (None, 4)
    # no sleep after the final attempt
    assert delays == [1.0, 2.0, 3.0]


def test_reconcile_links_session(auth_headers):
    h = auth_headers(user_id="user_reconcile")
    session_id = _start(h, _companion(h)['id'])['session']['id']
    voice = FakeVoice(calls={session_id: 'call-found'}, appear_after=2)
    user = CurrentUser(id="user_reconcile", plan="pro")

    out = reconcile_call_id(engine, session_id, user, voice, max_attempts=5, base_delay=0.5, sleep=lambda _s: None)
    assert out == {'sessionId': session_id, 'callId': 'call-found', 'linked': True, 'attempts': 3}
    rows = client.get('/api/sessions/transcripts', headers=h).json()
    assert [r['call_id'] for r in rows] == ['call-found']

    # already linked: no provider lookups
    again = reconcile_call_id(engine, session_id, user, voice, max_attempts=5, base_delay=0.5, sleep=lambda _s: None)
    assert again['attempts'] == 0
    assert voice.lookups == 3


def test_reconcile_gives_up_and_leaves_session_unlinked(auth_headers):
    h = auth_headers(user_id="user_no_call")
    session_id = _start(h, _companion(h)['id'])['session']['id']
    voice = FakeVoice()
    user = CurrentUser(id="user_no_call", plan="pro")
    out = reconcile_call_id(engine, session_id, user, voice, max_attempts=3, base_delay=0.5, sleep=lambda _s: None)
    assert out['linked'] is False
    assert out['attempts'] == 3
    assert client.get('/api/sessions/transcripts', headers=h).json() == []


def test_reconcile_conflicts_with_different_client_id(auth_headers):
    h = auth_headers(user_id="user_conflict")
    session_id = _start(h, _companion(h)['id'])['session']['id']
    client.patch(f'/api/sessions/{session_id}', headers=h, json={'callId': 'from-client'})
    voice = FakeVoice(calls={session_id: 'from-provider'})
    user = CurrentUser(id="user_conflict", plan="pro")
    # linked rows short-circuit before polling
    out = reconcile_call_id(engine, session_id, user, voice, max_attempts=2, base_delay=0, sleep=lambda _s: None)
    assert out['callId'] == 'from-client'

    with Session(engine) as db:
        svc = SessionService(db)
        row = svc.get_owned(session_id, user)
        with pytest.raises(Conflict):
            svc.link_row(row, 'from-provider')


def test_reconcile_endpoint_runs_background_job(auth_headers, overrides, monkeypatch):
    monkeypatch.setattr(settings, "RECONCILE_BASE_DELAY_SECONDS", 0)
    h = auth_headers()
    session_id = _start(h, _companion(h)['id'])['session']['id']
    voice = FakeVoice(calls={session_id: 'call-bg'})
    overrides[get_voice_client] = lambda: voice

    r = client.post(f'/api/sessions/{session_id}/reconcile', headers=h)
    assert r.status_code == 202
    body = r.json()
    assert body['status'] == 'queued'
    assert body['status_url'] == f"/api/jobs/{body['job_id']}"

    job = None
    for _ in range(50):
        job = client.get(body['status_url'], headers=h).json()
        if job['status'] in ('succeeded', 'failed'):
            break
        time.sleep(0.05)
    assert job['status'] == 'succeeded', job
    assert job['result']['callId'] == 'call-bg'
    assert job['kind'] == 'reconcile_call_id'

    # jobs are private to their owner
    assert client.get(body['status_url'], headers=auth_headers()).status_code == 404


def test_reconcile_endpoint_checks_ownership(auth_headers, overrides):
    overrides[get_voice_client] = lambda: FakeVoice()
    h = auth_headers()
    session_id = _start(h, _companion(h)['id'])['session']['id']
    r = client.post(f'/api/sessions/{session_id}/reconcile', headers=auth_headers())
    assert r.status_code == 403
