from flask import Flask

from flow_automation.config import Config
from flow_automation.database import db, init_db


def create_app(config_class=Config, providers=None, repository=None):
    """
    Args:
        config_class: Config object (TestConfig in tests)
        providers: Optional Providers wired into the messaging/email/AI executors
        repository: Persistence (SQLAlchemyRepository on the app database by default)
    """
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)
    init_db(app)

    from flow_automation.effects import default_registry
    from flow_automation.flow_engine.executor import FlowExecutor
    from flow_automation.persistence import SQLAlchemyRepository
    from flow_automation.services import FlowService
    from flow_automation.triggers import EventBus, TriggerDispatcher

    if repository is None:
        repository = SQLAlchemyRepository()
    executor = FlowExecutor(repository, default_registry(providers), config=app.config)
    event_bus = EventBus()
    dispatcher = TriggerDispatcher(repository, executor, config=app.config)
    with app.app_context():
        dispatcher.attach(event_bus)

    app.extensions['flow_automation'] = {
        'repository': repository,
        'executor': executor,
        'dispatcher': dispatcher,
        'event_bus': event_bus,
        'flows': FlowService(repository, executor, dispatcher),
    }

    # Webhook ingress
    from flow_automation.routes import webhooks
    app.register_blueprint(webhooks.webhooks_bp)

    # Health check endpoint
    from flow_automation.routes import health
    app.register_blueprint(health.bp)

    return app
