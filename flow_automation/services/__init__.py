from flow_automation.services.flow_service import FlowService

__all__ = ['FlowService']
