"""
channels — Per-channel delivery backends.

Each channel implements a minimal send capability:
    SmsSender.send(phone, body)
    EmailSender.send(address, subject, body)
    PushSender.send(user_id, title, body, data)

A Null sender stands in when credentials are absent, so dispatch logic never
branches on configuration. Failure handling lives in the dispatcher.
"""
