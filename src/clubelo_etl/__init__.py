"""ClubElo ratings and fixtures ingestion into PostgreSQL."""
