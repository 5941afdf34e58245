"""SceneScout event processing libraries."""
