import atexit
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from apscheduler.schedulers.background import BackgroundScheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

db = SQLAlchemy()
jwt = JWTManager()
bcrypt = Bcrypt()
scheduler = None

def create_app(config_class='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)

    with app.app_context():
        import models  # noqa: F401  (registers tables on db.metadata)
        from errors import register_error_handlers
        from auth import bp as auth_bp, register_jwt_handlers
        from rides import bp as rides_bp
        from bookings import bp as bookings_bp
        from payments import bp as payments_bp
        from feedback import bp as feedback_bp
        from notifications import bp as notifications_bp
        from safety import bp as safety_bp
        from drivers import bp as drivers_bp
        from admin import bp as admin_bp
        from users import bp as users_bp
        from earnings import bp as earnings_bp

        register_error_handlers(app)
        register_jwt_handlers(jwt)

        app.register_blueprint(auth_bp)
        app.register_blueprint(rides_bp)
        app.register_blueprint(bookings_bp)
        app.register_blueprint(payments_bp)
        app.register_blueprint(feedback_bp)
        app.register_blueprint(notifications_bp)
        app.register_blueprint(safety_bp)
        app.register_blueprint(drivers_bp)
        app.register_blueprint(admin_bp)
        app.register_blueprint(users_bp)
        app.register_blueprint(earnings_bp)

        @app.route('/api/health')
        def health():
            return {'status': 'ok'}

        if app.config.get("SCHEDULER_ENABLED"):
            start_scheduler(app)

    return app

def start_scheduler(app):
    """Run the recurring-ride and safety-reminder jobs in the background for the lifetime of the process"""
    from safety import process_overdue_checks
    from scheduling import process_scheduled_rides

    global scheduler
    if scheduler:
        return scheduler

    def run_job():
        with app.app_context():
            process_scheduled_rides(db.session)

    def run_safety_job():
        with app.app_context():
            process_overdue_checks(db.session)

    scheduler = BackgroundScheduler()
    scheduler.add_job(func=run_job, trigger="interval", seconds=app.config["SCHEDULE_INTERVAL_SECONDS"])
    scheduler.add_job(func=run_safety_job, trigger="interval", seconds=app.config["SAFETY_CHECK_INTERVAL_SECONDS"])
    scheduler.start()
    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())
    return scheduler
