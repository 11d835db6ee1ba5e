from app import app, db, Admin, SubscriptionPlan, DEFAULT_PRICE_PER_GB
import os


def init_db(seed_plan=True):
    with app.app_context():
        # Create tables
        db.create_all()
        print("✅ Database tables created.")

        # Create initial admin if not exists
        if not Admin.query.first():
            username = os.environ.get('INITIAL_ADMIN_USERNAME', 'admin')
            password = os.environ.get('INITIAL_ADMIN_PASSWORD', 'admin')

            admin = Admin(username=username, enabled=True)
            admin.set_password(password)

            db.session.add(admin)
            db.session.commit()
            print(f"✅ Initial admin created: {username}")
        else:
            print("ℹ️  Admin already exists.")

        if seed_plan and not SubscriptionPlan.query.first():
            plan = SubscriptionPlan(
                plan_id='default',
                name_en='Pay per GB',
                name_fa='پرداخت به ازای گیگ',
                api_type=app.config['DEFAULT_PANEL_TYPE'],
                price_per_gb=DEFAULT_PRICE_PER_GB,
                default_data_limit_gb=10,
                default_duration_days=30,
            )
            db.session.add(plan)
            db.session.commit()
            print(f"✅ Default plan created ({DEFAULT_PRICE_PER_GB} Toman per GB)")


if __name__ == "__main__":
    init_db()
