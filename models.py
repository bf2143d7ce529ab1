from datetime import datetime
from app import db

# Booking statuses that hold seats on the ride
SEAT_HOLDING_STATUSES = ("confirmed", "in_progress", "completed")
CANCELLED_STATUSES = ("canceled_by_driver", "canceled_by_passenger")
DRIVER_TYPES = ("driver", "both")


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(20), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    user_type = db.Column(db.String(20), nullable=False, default="passenger")
    is_available = db.Column(db.Boolean, default=False)
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    emergency_contact_name = db.Column(db.String(100))
    emergency_contact_phone = db.Column(db.String(20))
    emergency_contact_email = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    vehicles = db.relationship('Vehicle', backref='owner', lazy=True)
    documents = db.relationship('DriverDocument', backref='driver', lazy=True)

    @property
    def is_driver(self):
        return self.user_type in DRIVER_TYPES

    def to_dict(self):
        return {
            'user_id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'user_type': self.user_type,
            'is_available': bool(self.is_available),
            'latitude': self.latitude,
            'longitude': self.longitude,
        }


class DriverDocument(db.Model):
    __tablename__ = 'driver_documents'
    id = db.Column(db.Integer, primary_key=True)
    driver_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    doc_type = db.Column(db.String(50), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    rejection_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'document_id': self.id,
            'driver_id': self.driver_id,
            'doc_type': self.doc_type,
            'file_url': self.file_url,
            'status': self.status,
            'rejection_reason': self.rejection_reason,
            'created_at': _iso(self.created_at),
        }


class Vehicle(db.Model):
    __tablename__ = 'vehicles'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    model = db.Column(db.String(100), nullable=False)
    license_plate = db.Column(db.String(20), unique=True, nullable=False)
    capacity = db.Column(db.Integer, nullable=False)
    color = db.Column(db.String(30))
    vehicle_image_url = db.Column(db.String(500))
    verification_status = db.Column(db.String(20), default="pending")
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'vehicle_id': self.id,
            'user_id': self.user_id,
            'model': self.model,
            'license_plate': self.license_plate,
            'capacity': self.capacity,
            'color': self.color,
            'vehicle_image_url': self.vehicle_image_url,
            'verification_status': self.verification_status,
            'created_at': _iso(self.created_at),
        }


class Ride(db.Model):
    __tablename__ = 'rides'
    __table_args__ = (
        db.CheckConstraint('available_seats >= 0 AND available_seats <= total_seats', name='ck_rides_seats'),
    )
    id = db.Column(db.Integer, primary_key=True)
    driver_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicles.id'), nullable=True)
    source = db.Column(db.String(255), nullable=False)
    destination = db.Column(db.String(255), nullable=False)
    date = db.Column(db.Date, nullable=False)
    time = db.Column(db.String(8), nullable=False)  # HH:MM:SS
    total_seats = db.Column(db.Integer, nullable=False)
    available_seats = db.Column(db.Integer, nullable=False)
    fare_per_km = db.Column(db.Float, nullable=False, default=10.0)
    distance_km = db.Column(db.Float, nullable=False, default=0.0)
    status = db.Column(db.String(20), nullable=False, default="scheduled")
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    driver = db.relationship('User', backref='rides', lazy=True)
    vehicle = db.relationship('Vehicle', lazy=True)
    bookings = db.relationship('Booking', backref='ride', lazy=True)

    def to_dict(self):
        result = {
            'ride_id': self.id,
            'driver_id': self.driver_id,
            'vehicle_id': self.vehicle_id,
            'source': self.source,
            'destination': self.destination,
            'date': _iso(self.date),
            'time': self.time,
            'total_seats': self.total_seats,
            'available_seats': self.available_seats,
            'fare_per_km': self.fare_per_km,
            'distance_km': self.distance_km,
            'status': self.status,
            'created_at': _iso(self.created_at),
        }
        if self.vehicle is not None:
            result.update({
                'vehicle_model': self.vehicle.model,
                'vehicle_color': self.vehicle.color,
                'license_plate': self.vehicle.license_plate,
                'vehicle_image_url': self.vehicle.vehicle_image_url,
                'vehicle_capacity': self.vehicle.capacity,
            })
        return result


class RideSchedule(db.Model):
    __tablename__ = 'ride_schedules'
    id = db.Column(db.Integer, primary_key=True)
    driver_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    cron_expr = db.Column(db.String(64), nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'schedule_id': self.id,
            'driver_id': self.driver_id,
            'cron_expr': self.cron_expr,
            'active': bool(self.active),
            'created_at': _iso(self.created_at),
        }


class RideWaypoint(db.Model):
    __tablename__ = 'ride_waypoints'
    id = db.Column(db.Integer, primary_key=True)
    ride_id = db.Column(db.Integer, db.ForeignKey('rides.id'), nullable=False, index=True)
    name = db.Column(db.String(100))
    lat = db.Column(db.Float, nullable=False)
    lon = db.Column(db.Float, nullable=False)
    order_index = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'waypoint_id': self.id,
            'ride_id': self.ride_id,
            'name': self.name,
            'lat': self.lat,
            'lon': self.lon,
            'order_index': self.order_index,
        }


class Booking(db.Model):
    __tablename__ = 'bookings'
    id = db.Column(db.Integer, primary_key=True)
    ride_id = db.Column(db.Integer, db.ForeignKey('rides.id'), nullable=False, index=True)
    passenger_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    seats_booked = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(30), nullable=False, default="pending")
    cancellation_fee = db.Column(db.Float, nullable=False, default=0.0)
    notes = db.Column(db.String(500))
    booking_date = db.Column(db.DateTime, default=datetime.utcnow)

    passenger = db.relationship('User', lazy=True)
    payments = db.relationship('Payment', backref='booking', lazy=True)

    def completed_payment(self):
        for payment in self.payments:
            if payment.status == "completed":
                return payment
        return None

    def to_dict(self):
        payment = self.completed_payment()
        return {
            'booking_id': self.id,
            'ride_id': self.ride_id,
            'passenger_id': self.passenger_id,
            'seats_booked': self.seats_booked,
            'amount': self.amount,
            'booking_status': self.status,
            'cancellation_fee': self.cancellation_fee,
            'notes': self.notes,
            'booking_date': _iso(self.booking_date),
            'payment_method': payment.method if payment else None,
            'payment_status': payment.status if payment else None,
        }


class Payment(db.Model):
    __tablename__ = 'payments'
    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('bookings.id'), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    transaction_id = db.Column(db.String(64))
    payment_date = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'payment_id': self.id,
            'booking_id': self.booking_id,
            'amount': self.amount,
            'payment_method': self.method,
            'payment_status': self.status,
            'transaction_id': self.transaction_id,
            'payment_date': _iso(self.payment_date),
        }


class Wallet(db.Model):
    __tablename__ = 'wallets'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    balance = db.Column(db.Float, nullable=False, default=0.0)

    def to_dict(self):
        return {'user_id': self.user_id, 'balance': round(self.balance, 2)}


class WalletTransaction(db.Model):
    __tablename__ = 'wallet_transactions'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    type = db.Column(db.String(20), nullable=False)  # topup, debit, refund
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'tx_id': self.id,
            'user_id': self.user_id,
            'amount': self.amount,
            'type': self.type,
            'created_at': _iso(self.created_at),
        }


class Feedback(db.Model):
    __tablename__ = 'feedback'
    __table_args__ = (
        db.UniqueConstraint('ride_id', 'user_id', name='uq_feedback_ride_user'),
    )
    id = db.Column(db.Integer, primary_key=True)
    ride_id = db.Column(db.Integer, db.ForeignKey('rides.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    comments = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    ride = db.relationship('Ride', lazy=True)
    user = db.relationship('User', lazy=True)

    def to_dict(self):
        return {
            'feedback_id': self.id,
            'ride_id': self.ride_id,
            'user_id': self.user_id,
            'rating': self.rating,
            'comments': self.comments,
            'created_at': _iso(self.created_at),
        }


class Notification(db.Model):
    __tablename__ = 'notifications'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'notification_id': self.id,
            'user_id': self.user_id,
            'message': self.message,
            'is_read': bool(self.is_read),
            'created_at': _iso(self.created_at),
        }


class NightRideSafetyCheck(db.Model):
    __tablename__ = 'night_ride_safety_checks'
    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('bookings.id'), nullable=False, index=True)
    ride_id = db.Column(db.Integer, db.ForeignKey('rides.id'), nullable=False, index=True)
    passenger_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    is_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    confirmation_time = db.Column(db.DateTime)
    admin_notified = db.Column(db.Boolean, nullable=False, default=False)
    passenger_reminded = db.Column(db.Boolean, nullable=False, default=False)
    ride_completed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    ride = db.relationship('Ride', lazy=True)

    def to_dict(self):
        return {
            'safety_check_id': self.id,
            'booking_id': self.booking_id,
            'ride_id': self.ride_id,
            'passenger_id': self.passenger_id,
            'is_confirmed': bool(self.is_confirmed),
            'confirmation_time': _iso(self.confirmation_time),
            'ride_completed_at': _iso(self.ride_completed_at),
            'admin_notified': bool(self.admin_notified),
        }


class SosAlert(db.Model):
    __tablename__ = 'sos_alerts'
    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('bookings.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    details = db.Column(db.Text)
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    booking = db.relationship('Booking', lazy=True)

    def to_dict(self):
        return {
            'alert_id': self.id,
            'booking_id': self.booking_id,
            'user_id': self.user_id,
            'details': self.details,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'created_at': _iso(self.created_at),
        }
