import itertools
from datetime import date, timedelta

import pytest

from app import create_app, db
from auth import issue_token
from models import Booking, DriverDocument, Payment, Ride, User, Vehicle, Wallet

_seq = itertools.count(1)


@pytest.fixture
def app():
    app = create_app('config.TestConfig')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(app):
    def make(user):
        return {"Authorization": f"Bearer {issue_token(user)}"}
    return make


@pytest.fixture
def make_user(session):
    def make(user_type="passenger", name=None, **kwargs):
        n = next(_seq)
        user = User(
            name=name or f"User {n}",
            email=kwargs.pop("email", f"user{n}@example.com"),
            phone=kwargs.pop("phone", f"9{n:09d}"),
            password_hash=kwargs.pop("password_hash", "not-a-real-hash"),
            user_type=user_type,
            **kwargs,
        )
        session.add(user)
        session.commit()
        return user
    return make


@pytest.fixture
def make_vehicle(session):
    def make(owner, capacity=4, **kwargs):
        n = next(_seq)
        vehicle = Vehicle(
            user_id=owner.id,
            model=kwargs.pop("model", "Swift Dzire"),
            license_plate=kwargs.pop("license_plate", f"KA01AB{n:04d}"),
            capacity=capacity,
            **kwargs,
        )
        session.add(vehicle)
        session.commit()
        return vehicle
    return make


@pytest.fixture
def make_document(session):
    def make(driver, status="pending", doc_type="license"):
        document = DriverDocument(driver_id=driver.id, doc_type=doc_type, file_url="https://files.example.com/doc.pdf", status=status)
        session.add(document)
        session.commit()
        return document
    return make


@pytest.fixture
def make_ride(session):
    def make(driver, total_seats=4, distance_km=10.0, status="scheduled", **kwargs):
        ride = Ride(
            driver_id=driver.id,
            source=kwargs.pop("source", "MG Road"),
            destination=kwargs.pop("destination", "Airport"),
            date=kwargs.pop("date", date.today() + timedelta(days=1)),
            time=kwargs.pop("time", "09:00:00"),
            total_seats=total_seats,
            available_seats=kwargs.pop("available_seats", total_seats),
            fare_per_km=10.0,
            distance_km=distance_km,
            status=status,
            **kwargs,
        )
        session.add(ride)
        session.commit()
        return ride
    return make


@pytest.fixture
def make_booking(session):
    """Booking whose seats are taken from the ride when its status holds seats"""
    def make(ride, passenger, seats=1, status="pending", amount=None, paid_with=None):
        booking = Booking(
            ride_id=ride.id,
            passenger_id=passenger.id,
            seats_booked=seats,
            amount=amount if amount is not None else round(10 * ride.distance_km * seats, 2),
            status=status,
        )
        if status in ("confirmed", "in_progress", "completed"):
            ride.available_seats -= seats
        session.add(booking)
        session.flush()
        if paid_with:
            session.add(Payment(
                booking_id=booking.id,
                amount=booking.amount,
                method=paid_with,
                status="completed",
                transaction_id=f"TXN{booking.id}",
            ))
        session.commit()
        return booking
    return make


@pytest.fixture
def make_wallet(session):
    def make(user, balance=0.0):
        wallet = Wallet(user_id=user.id, balance=balance)
        session.add(wallet)
        session.commit()
        return wallet
    return make
