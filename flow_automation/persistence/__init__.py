from flow_automation.persistence.base import Repository
from flow_automation.persistence.memory import InMemoryRepository
from flow_automation.persistence.sqlalchemy_repository import SQLAlchemyRepository

__all__ = [
    'Repository',
    'InMemoryRepository',
    'SQLAlchemyRepository',
]
