# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Multi-channel communications dispatcher.

Features:
    - Email, SMS, push and webhook channels behind pluggable provider adapters
    - Recipient normalization (E.164 phone numbers, lowercased emails)
    - Durable dispatch queue with priorities, scheduled sends and retries
    - Per-provider rate limiting (minute/hour/day)
    - Bulk fan-out with aggregate progress
    - Provider webhook reconciliation with idempotent event recording
    - Prometheus metrics for monitoring
    - FastAPI REST API for submission, queries and control

Example::

    from comms_dispatch.core import CommsDispatchCore
    from comms_dispatch.api import create_app

    core = CommsDispatchCore(db_path="/data/comms.db")
    app = create_app(core, api_token="secret")
"""
