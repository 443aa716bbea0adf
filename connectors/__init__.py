"""
connectors — account linking and downstream actions through Alloy.

Provides:
  • AlloyClient: credential and action endpoints of the Alloy API
  • OAuthCallbackHandler: initiate → callback → exchange, with discovery
    and retry when the authorization code goes missing
  • CallbackListener: a local HTTP server for CLI-driven flows
  • NotionClient: Notion reads and writes executed as Alloy actions

Errors raised here all derive from ``connectors.errors.AlloyError``.
"""
