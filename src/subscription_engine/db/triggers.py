# subscription_engine/db/triggers.py
from sqlalchemy import DDL, event
from .billing.subscription_orm import SubscriptionORM
from .billing.payment_request_orm import PaymentRequestORM

SUBSCRIPTION_CHANNEL = "subscription_changed"

# --- Change feed: pg_notify on every subscription insert/update ---

create_subscription_notify_function_ddl = DDL(f"""
    CREATE OR REPLACE FUNCTION notify_subscription_changed()
    RETURNS trigger AS $$
    DECLARE
        payload JSON;
    BEGIN
        IF TG_OP = 'UPDATE' AND NEW.version = OLD.version THEN
            RETURN NEW;
        END IF;
        payload = json_build_object(
            'subscription_id', NEW.id::text,
            'tenant_id', NEW.tenant_id::text,
            'status', NEW.status,
            'version', NEW.version
        );
        PERFORM pg_notify('{SUBSCRIPTION_CHANNEL}', payload::text);
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
""")

drop_subscription_notify_trigger_ddl = DDL("""
    DROP TRIGGER IF EXISTS trg_subscriptions_notify ON subscriptions;
""")

create_subscription_notify_trigger_ddl = DDL("""
    CREATE TRIGGER trg_subscriptions_notify
    AFTER INSERT OR UPDATE ON subscriptions
    FOR EACH ROW
    EXECUTE FUNCTION notify_subscription_changed();
""")

event.listen(SubscriptionORM.__table__, "after_create", create_subscription_notify_function_ddl.execute_if(dialect="postgresql"))
event.listen(SubscriptionORM.__table__, "after_create", drop_subscription_notify_trigger_ddl.execute_if(dialect="postgresql"))
event.listen(SubscriptionORM.__table__, "after_create", create_subscription_notify_trigger_ddl.execute_if(dialect="postgresql"))


# --- No two approved payment requests of one subscription may overlap ---
# Half-open ranges, so back-to-back periods are allowed.

create_btree_gist_ddl = DDL("""
    CREATE EXTENSION IF NOT EXISTS btree_gist;
""")

create_no_overlap_constraint_ddl = DDL("""
    ALTER TABLE payment_requests
    ADD CONSTRAINT ex_payment_requests_approved_no_overlap
    EXCLUDE USING gist (
        subscription_id WITH =,
        tstzrange(period_start, period_end, '[)') WITH &&
    ) WHERE (status = 'approved');
""")

event.listen(PaymentRequestORM.__table__, "before_create", create_btree_gist_ddl.execute_if(dialect="postgresql"))
event.listen(PaymentRequestORM.__table__, "after_create", create_no_overlap_constraint_ddl.execute_if(dialect="postgresql"))
