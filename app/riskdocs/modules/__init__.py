"""
Feature modules live under this package.

Keep module boundaries clean: each module owns its routes and models, while the
lifecycle engine (app.riskdocs.lifecycle) is the only code that moves documents
and actions between lifecycle states.
"""
