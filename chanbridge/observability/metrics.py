from __future__ import annotations
from prometheus_client import Counter, Gauge

channel_connected = Gauge("chb_channel_connected", "1 while the channel holds a live connection", ["channel"])
connection_transitions = Counter("chb_connection_transitions_total", "Connection state transitions", ["channel", "state"])
reconnects_scheduled = Counter("chb_reconnects_scheduled_total", "Reconnect attempts scheduled", ["channel"])
inbound_envelopes = Counter("chb_inbound_envelopes_total", "Inbound envelopes forwarded to the host", ["channel"])
inbound_skipped = Counter("chb_inbound_skipped_total", "Inbound platform messages skipped", ["channel", "reason"])
outbound_sends = Counter("chb_outbound_sends_total", "Outbound sends", ["channel", "method"])
thread_decisions = Counter("chb_thread_decisions_total", "Thread routing decisions", ["decision"])
thread_failures = Counter("chb_thread_failures_total", "Thread creation failures", ["code"])
