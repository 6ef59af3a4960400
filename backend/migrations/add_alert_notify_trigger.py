"""
Migration: Add NOTIFY trigger on system_alerts.

Every inserted alert is published on the 'system_alert' channel as a
JSON document. The alert forwarder LISTENs on that channel and relays
each alert to the external monitoring webhook.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/pos_marketplace"
)

CHANNEL = os.getenv("ALERT_NOTIFY_CHANNEL", "system_alert")


def run_migration():
    """Install the notify function and trigger (idempotent)."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        conn.execute(text(f"""
            CREATE OR REPLACE FUNCTION notify_system_alert() RETURNS trigger AS $$
            BEGIN
                PERFORM pg_notify('{CHANNEL}', json_build_object(
                    'id', NEW.id,
                    'alert_type', NEW.alert_type,
                    'severity', NEW.severity,
                    'title', NEW.title,
                    'message', NEW.message,
                    'related_entity_type', NEW.related_entity_type,
                    'related_entity_id', NEW.related_entity_id,
                    'created_at', NEW.created_at
                )::text);
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql
        """))
        conn.execute(text("DROP TRIGGER IF EXISTS system_alert_notify ON system_alerts"))
        conn.execute(text("""
            CREATE TRIGGER system_alert_notify
            AFTER INSERT ON system_alerts
            FOR EACH ROW EXECUTE FUNCTION notify_system_alert()
        """))
        conn.commit()

    print(f"Installed system_alerts NOTIFY trigger on channel '{CHANNEL}'")


if __name__ == "__main__":
    run_migration()
