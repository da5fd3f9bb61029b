import random

from delaywatch.database import SessionLocal, init_db
from delaywatch.models import BillingStatus, Merchant, Shipment
from delaywatch.services import create_shipment

DEMO_SHOP_DOMAIN = "demo-store.myshopify.com"

# (tracking company, tracking number, service level)
test_fulfillments = [
    ("UPS", "1Z999AA10123456784", "UPS Ground"),
    ("FedEx", "123456789012", "FedEx 2Day"),
    ("USPS", "9400111899223100000000", "Priority Mail"),
    (None, "9261290100130736401234", None),
]


def init_test_data():
    init_db()

    db = SessionLocal()
    try:
        existing_count = db.query(Shipment).count()

        if existing_count > 0:
            print(f"Database already holds {existing_count} shipments.")
            print("Skipping demo data.")
            return

        merchant = db.query(Merchant).filter(Merchant.shop_domain == DEMO_SHOP_DOMAIN).first()
        if not merchant:
            merchant = Merchant(
                shop_domain=DEMO_SHOP_DOMAIN,
                random_poll_offset=random.randint(0, 239),
                billing_status=BillingStatus.ACTIVE,
                settings={},
            )
            db.add(merchant)
            db.commit()
            db.refresh(merchant)

        print("Adding demo shipments...")

        for index, (company, tracking_number, service_level) in enumerate(test_fulfillments, start=1):
            shipment, _ = create_shipment(
                db,
                merchant,
                order_id=f"demo-order-{index}",
                fulfillment_id=f"demo-fulfillment-{index}",
                tracking_number=tracking_number,
                tracking_company=company,
                service_level=service_level,
                order_number=f"#100{index}",
            )
            print(f"  ✓ {shipment.carrier.value} {tracking_number}, expected {shipment.expected_delivery_date:%Y-%m-%d}")

        print(f"\nAdded {len(test_fulfillments)} demo shipments.")
        print("Set carrier credentials in .env, then run POST /api/scheduler/run to poll them.")

    except Exception as e:
        print(f"Initialization failed: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    init_test_data()
