import init_db as seed
from delaywatch.models import Carrier, Merchant, Shipment


def test_seeds_demo_shipments_once(monkeypatch, db, session_factory):
    monkeypatch.setattr(seed, "SessionLocal", session_factory)
    monkeypatch.setattr(seed, "init_db", lambda: None)

    seed.init_test_data()
    seed.init_test_data()

    merchant = db.query(Merchant).filter(Merchant.shop_domain == seed.DEMO_SHOP_DOMAIN).one()
    assert 0 <= merchant.random_poll_offset < 240

    shipments = db.query(Shipment).order_by(Shipment.id).all()
    assert [shipment.carrier for shipment in shipments] == [Carrier.UPS, Carrier.FEDEX, Carrier.USPS, Carrier.USPS]
    assert all(shipment.next_poll_at is not None for shipment in shipments)
