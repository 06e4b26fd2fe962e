from comms_dispatch.prometheus import CommsMetrics


def test_comms_metrics_counters_and_gauge():
    metrics = CommsMetrics()

    metrics.inc_sent("email", "mailer")
    metrics.inc_failed("sms", None)
    metrics.inc_retried("sms", "at")
    metrics.inc_deferred("sms", "at")
    metrics.inc_webhook_event("delivery")
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'comms_sent_total{channel="email",provider="mailer"} 1.0' in output
    assert b'comms_failed_total{channel="sms",provider="default"} 1.0' in output
    assert b"comms_deferred_total" in output
    assert b'comms_webhook_events_total{event="delivery"} 1.0' in output
    assert b"comms_pending_jobs 3.0" in output


def test_registries_are_isolated():
    first = CommsMetrics()
    second = CommsMetrics()

    first.inc_sent("email", "mailer")
    assert b'provider="mailer"' not in second.generate_latest()
