from sqlalchemy import select

from treasury.db import SessionLocal, engine
from treasury.models import Base, Withdrawal, WithdrawalStatus
from treasury.services.auto_send_service import get_or_create_treasury_settings, update_treasury_settings


DEMO_WITHDRAWALS = [
    ('Ava Martinez', 'Spring campaign video', 125000),
    ('Noah Chen', 'Product review series', 48000),
    ('Mia Johnson', 'Launch livestream', 210000),
]


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        settings_row = get_or_create_treasury_settings(db)
        if not settings_row.treasurer_email:
            update_treasury_settings(
                db,
                updated_by='seed',
                treasurer_email='treasurer@example.com',
                treasurer_name='Terry Treasurer',
                auto_send_delay_hours=24,
                auto_send_max_amount_cents=500000,
            )

        for creator_name, description, amount_cents in DEMO_WITHDRAWALS:
            existing = db.execute(
                select(Withdrawal.id).where(Withdrawal.creator_name == creator_name)
            ).scalar_one_or_none()
            if existing:
                continue
            db.add(
                Withdrawal(
                    creator_name=creator_name,
                    project_description=description,
                    net_amount_cents=amount_cents,
                    currency='USD',
                    status=WithdrawalStatus.APPROVED,
                )
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
