# tts_cost_guard/demo/seed_demo_data.py

from datetime import timedelta

from tts_cost_guard.core.pricing import estimate_cost
from tts_cost_guard.storage.models import UsageLogEntry
from tts_cost_guard.storage.repository import initialize_schema, insert_usage_logs, utc_now

initialize_schema()

now = utc_now()
entries = []
for i in range(40):
    text_length = 600 + i * 25
    provider = "elevenlabs" if i % 3 else "openai"
    cached = i % 4 == 0
    entries.append(
        UsageLogEntry(
            created_at=now - timedelta(minutes=30 * i),
            provider=provider,
            estimated_cost=estimate_cost(provider, text_length, cached=cached),
            user_id=f"user-{i % 7}",
            text_length=text_length,
            cached=cached,
            generation_time_ms=900 + i * 40,
        )
    )

# a burst of failures and a spike
entries.append(UsageLogEntry(
    created_at=now - timedelta(minutes=5),
    provider="elevenlabs",
    estimated_cost=0.0,
    status="error",
    user_id="user-1",
    text_length=1200,
    error_message="502 Bad Gateway",
))
entries.append(UsageLogEntry(
    created_at=now - timedelta(minutes=2),
    provider="elevenlabs",
    estimated_cost=45.0,  # spike
    user_id="user-3",
    text_length=5000,
))

insert_usage_logs(entries)

print("Demo usage data inserted")
