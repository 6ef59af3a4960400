"""
Migration: Create application lifecycle engine tables.

Creates:
1. applications                   - lifecycle status, deadlines, counters
2. application_offers             - bank offers (status-transitioned only)
3. revenue_collections            - one fee obligation per bank purchase
4. application_status_audit       - append-only status history
5. system_alerts                  - append-only operator alerts
6. business_intelligence_metrics  - daily revenue analytics, job health

Audit and alert tables are never truncated by the engine.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/pos_marketplace"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


TABLES = [
    ("applications", """
        CREATE TABLE applications (
            id SERIAL PRIMARY KEY,
            business_user_id VARCHAR(64) NOT NULL,
            status VARCHAR(32) NOT NULL DEFAULT 'live_auction',
            submitted_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            auction_end_time TIMESTAMP,
            offer_selection_end_time TIMESTAMP,
            offers_count INTEGER NOT NULL DEFAULT 0,
            purchases_count INTEGER NOT NULL DEFAULT 0,
            purchased_by JSON NOT NULL DEFAULT '[]',
            auction_round INTEGER NOT NULL DEFAULT 1,
            revenue_collected NUMERIC(10, 2) NOT NULL DEFAULT 0.00,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_applications_business_user ON applications(business_user_id)",
        "CREATE INDEX idx_applications_status_auction_end ON applications(status, auction_end_time)",
        "CREATE INDEX idx_applications_status_selection_end ON applications(status, offer_selection_end_time)",
    ]),
    ("application_offers", """
        CREATE TABLE application_offers (
            id SERIAL PRIMARY KEY,
            application_id INTEGER NOT NULL REFERENCES applications(id),
            bank_user_id VARCHAR(64) NOT NULL,
            terms JSON,
            status VARCHAR(32) NOT NULL DEFAULT 'submitted',
            submitted_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            status_updated_at TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_application_offers_application ON application_offers(application_id)",
    ]),
    ("revenue_collections", """
        CREATE TABLE revenue_collections (
            id SERIAL PRIMARY KEY,
            application_id INTEGER NOT NULL REFERENCES applications(id),
            bank_user_id VARCHAR(64) NOT NULL,
            auction_round INTEGER NOT NULL DEFAULT 1,
            amount NUMERIC(10, 2) NOT NULL DEFAULT 25.00,
            currency VARCHAR(3) NOT NULL DEFAULT 'SAR',
            status VARCHAR(32) NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            failure_reason TEXT,
            payment_reference VARCHAR(128),
            verified BOOLEAN,
            verification_notes TEXT,
            verified_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            last_attempt_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            collected_at TIMESTAMP,
            escalated_at TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT uq_revenue_collection_purchase UNIQUE (application_id, auction_round, bank_user_id)
        )
    """, [
        "CREATE INDEX idx_revenue_collections_application ON revenue_collections(application_id)",
        "CREATE INDEX idx_revenue_collections_status ON revenue_collections(status)",
        "CREATE INDEX idx_revenue_collections_created ON revenue_collections(created_at)",
    ]),
    ("application_status_audit", """
        CREATE TABLE application_status_audit (
            id SERIAL PRIMARY KEY,
            application_id INTEGER NOT NULL REFERENCES applications(id),
            from_status VARCHAR(32),
            to_status VARCHAR(32) NOT NULL,
            actor_type VARCHAR(32) NOT NULL,
            actor_id VARCHAR(64),
            trigger VARCHAR(32) NOT NULL,
            reason TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_status_audit_application ON application_status_audit(application_id)",
        "CREATE INDEX idx_status_audit_created ON application_status_audit(created_at)",
    ]),
    ("system_alerts", """
        CREATE TABLE system_alerts (
            id SERIAL PRIMARY KEY,
            alert_type VARCHAR(32) NOT NULL,
            severity VARCHAR(32) NOT NULL DEFAULT 'medium',
            title VARCHAR(255) NOT NULL,
            message TEXT NOT NULL,
            related_entity_type VARCHAR(50),
            related_entity_id VARCHAR(64),
            is_resolved BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_system_alerts_dedupe ON system_alerts"
        "(alert_type, related_entity_type, related_entity_id, created_at)",
    ]),
    ("business_intelligence_metrics", """
        CREATE TABLE business_intelligence_metrics (
            id SERIAL PRIMARY KEY,
            metric_name VARCHAR(64) NOT NULL,
            metric_value DOUBLE PRECISION NOT NULL,
            metric_date DATE NOT NULL,
            metric_metadata JSON,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """, [
        "CREATE INDEX idx_bi_metrics_name ON business_intelligence_metrics(metric_name)",
    ]),
]


def run_migration():
    """Create all lifecycle engine tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        for table_name, ddl, indexes in TABLES:
            if table_exists(conn, table_name):
                print(f"{table_name} table already exists")
                continue
            conn.execute(text(ddl))
            for index_ddl in indexes:
                conn.execute(text(index_ddl))
            print(f"Created {table_name} table")

        conn.commit()

    print("Lifecycle engine migration complete")


if __name__ == "__main__":
    run_migration()
