"""
Session state machine transitions.
"""
import itertools
import random

import pytest

from voice_session.state import SessionState, SessionStateMachine, Trigger, next_state


S = SessionState
T = Trigger


def _machine_in(*triggers):
    machine = SessionStateMachine()
    for trigger in triggers:
        assert machine.fire(trigger)
    return machine


def test_happy_path():
    machine = _machine_in(T.START, T.CONNECTED)
    assert machine.state == S.CONNECTED
    assert machine.is_active


@pytest.mark.parametrize("triggers, expected", [
    ((T.START, T.CONNECTED, T.SPEECH_STARTED), S.LISTENING),
    ((T.START, T.CONNECTED, T.USER_TRANSCRIPT), S.LISTENING),
    ((T.START, T.CONNECTED, T.SPEECH_STARTED, T.SPEECH_STOPPED), S.CONNECTED),
    ((T.START, T.CONNECTED, T.REMOTE_AUDIO), S.SPEAKING),
    ((T.START, T.CONNECTED, T.SPEECH_STARTED, T.REMOTE_AUDIO), S.SPEAKING),
    ((T.START, T.CONNECTED, T.REMOTE_AUDIO, T.REMOTE_TRANSCRIPT_DONE), S.LISTENING),
    ((T.START, T.CONNECTED, T.REMOTE_TRANSCRIPT_DONE), S.LISTENING),
    ((T.START, T.CONNECTED, T.REMOTE_AUDIO, T.SPEECH_STARTED), S.LISTENING),
])
def test_turn_taking(triggers, expected):
    assert _machine_in(*triggers).state == expected


@pytest.mark.parametrize("state, trigger", [
    (S.IDLE, T.CONNECTED),
    (S.IDLE, T.SPEECH_STARTED),
    (S.CONNECTING, T.SPEECH_STARTED),
    (S.CONNECTING, T.REMOTE_AUDIO),
    (S.CONNECTED, T.SPEECH_STOPPED),
    (S.SPEAKING, T.REMOTE_AUDIO),
    (S.ERROR, T.CONNECTED),
    (S.ERROR, T.START),
    (S.IDLE, T.FAILED),
])
def test_pairs_outside_the_table_are_ignored(state, trigger):
    assert next_state(state, trigger) is None


def test_error_keeps_cause_until_stop():
    changes = []
    machine = _machine_in(T.START)
    machine.on_change(lambda old, new, cause: changes.append((old, new, cause)))

    assert machine.fire(T.FAILED, cause="La connexion au service vocal a expiré.")
    assert machine.state == S.ERROR
    assert machine.error_cause == "La connexion au service vocal a expiré."
    assert not machine.fire(T.SPEECH_STARTED)

    assert machine.fire(T.STOP)
    assert machine.state == S.IDLE
    assert machine.error_cause is None
    assert changes == [
        (S.CONNECTING, S.ERROR, "La connexion au service vocal a expiré."),
        (S.ERROR, S.IDLE, None),
    ]


@pytest.mark.parametrize("state", list(SessionState))
def test_stop_from_any_state_lands_in_idle(state):
    assert next_state(state, T.STOP) == S.IDLE


def test_stop_when_idle_changes_nothing():
    changes = []
    machine = SessionStateMachine()
    machine.on_change(lambda *args: changes.append(args))

    assert not machine.fire(T.STOP)
    assert changes == []


def test_random_speech_lifecycle_sequences_keep_a_single_state():
    rng = random.Random(7)
    speech = [T.SPEECH_STARTED, T.SPEECH_STOPPED, T.USER_TRANSCRIPT, T.REMOTE_AUDIO, T.REMOTE_TRANSCRIPT_DONE]
    for _ in range(200):
        machine = _machine_in(T.START, T.CONNECTED)
        for trigger in (rng.choice(speech) for _ in range(30)):
            machine.fire(trigger)
            assert machine.state in (S.CONNECTED, S.LISTENING, S.SPEAKING)


def test_every_active_state_fails_into_error():
    for state, trigger in itertools.product((S.CONNECTED, S.LISTENING, S.SPEAKING), (T.FAILED, T.LOST)):
        assert next_state(state, trigger) == S.ERROR
