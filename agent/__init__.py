"""Agent internals -- the pieces the query pipeline is built from.

Module Overview
---------------
**key_pool.py**
    Per-service pools of API keys with error classification, cooldowns,
    revocation and rotating retries. KeyPoolManager owns one pool per
    configured service.

**prompt_assembler.py**
    System prompt assembly -- identity, rules, action grammar and the
    catalog of registered actions, with the current time and user name
    appended on every build.

**query_service.py**
    Sends a user turn to the generation API (with rotation and history),
    dispatches the action tags in the reply, and folds the results back
    into the text the user sees.

**speech_client.py**
    ElevenLabs text-to-speech and speech-to-text over requests, using the
    same key rotation as generation.

**config_validator.py**
    Offline environment checks: keys, VENESA_HOME, shell executable.
"""
