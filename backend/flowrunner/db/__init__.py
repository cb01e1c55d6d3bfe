"""SQLAlchemy persistence for the SQL data client."""
