"""Business logic services. Functions take an explicit SQLAlchemy session."""
