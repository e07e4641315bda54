"""Pipeline services: Gmail fetching, cleaning, extraction, aggregation, scanning."""
