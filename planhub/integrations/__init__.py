"""planhub.integrations — External collaborator gateway modules.

All outbound HTTP calls to collaborators must go through a gateway in this
package, never via bare `requests` calls in services or blueprints.

Current gateways:
  regeneration_gateway.RegenerationGateway — derived-document content regeneration
"""
