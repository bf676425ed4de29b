"""app.integrations — outbound gateway modules.

Services never call ``requests`` or the host application directly; they go
through a gateway in this package so tests can swap the transport.

Current gateways:
  webhook_gateway.WebhookGateway — signed webhook POSTs over requests
  domain_gateway.DomainGateway   — task creation / status updates in the host app
"""
