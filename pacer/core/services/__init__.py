"""Application services built on top of the client facade."""
