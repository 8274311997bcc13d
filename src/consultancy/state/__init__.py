from consultancy.state.store import InMemoryProjectStore, LocalProjectStore, ProjectStore

__all__ = ["InMemoryProjectStore", "LocalProjectStore", "ProjectStore"]
