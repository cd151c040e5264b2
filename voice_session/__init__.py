"""
Realtime voice session client.

Negotiates a peer connection to a remote speech endpoint, runs the JSON event
protocol over its control channel, and keeps one ordered, deduplicated
transcript per session.

- Credentials come from the token server (token_server), never from local keys
- One VoiceSession owns its stream, transport and playback sink
- Every state change and admitted utterance is emitted as a structured event
"""
