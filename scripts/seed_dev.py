from datetime import datetime, timedelta, timezone

from luckyshare.db.engine import get_sessionmaker, make_engine
from luckyshare.models import Admin, Base, Player
from luckyshare.workflows import create_round, ensure_builtin_algorithms, purchase_tickets


def main() -> None:
    """Seed the development database with sample data."""
    engine = make_engine()

    # Drop and recreate all tables with foreign key checks disabled so the
    # reset does not depend on table order.
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        Base.metadata.drop_all(bind=conn)
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")
        conn.commit()

    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)

    now = datetime.now(timezone.utc)

    with Session.begin() as session:
        admin = Admin(email="admin@example.com", name="luckyshare_admin", role="superuser")
        session.add(admin)

        players = [
            Player(external_id="user_01", nickname="Alice"),
            Player(external_id="user_02", nickname="Bob"),
            Player(external_id="user_03", nickname="Carol"),
        ]
        session.add_all(players)
        session.flush()
        admin_id = admin.id
        player_ids = [player.id for player in players]

    ensure_builtin_algorithms(Session)

    phone = create_round(
        Session,
        title="Smartphone, 10 shares",
        description="Ten shares of one smartphone; drawn three minutes after selling out.",
        price_per_share="9.90",
        total_shares=10,
        start_time=now - timedelta(minutes=5),
        end_time=now + timedelta(days=7),
        purchase_limit=5,
        admin_id=admin_id,
        activate_now=True,
    )
    create_round(
        Session,
        title="Gift card bundle",
        price_per_share="1.00",
        total_shares=100,
        start_time=now + timedelta(days=1),
        end_time=now + timedelta(days=14),
        currency="USD",
        full_purchase_enabled=True,
        full_purchase_price="95.00",
        admin_id=admin_id,
    )

    purchase_tickets(Session, phone.id, player_ids[0], 3)
    purchase_tickets(Session, phone.id, player_ids[1], 2)

    print(f"Development database seeded (round {phone.period_code} is on sale).")


if __name__ == "__main__":
    main()
