"""
Rules package.

Defines the rule model and the evaluation machinery used by the
Permissions Service:

- conditions: Mongo-style condition parsing and evaluation.
- models: Actions, subject types, rules, rule sets and user context.
- compiler: Turns a user's household roles into an ordered rule set.
- codec: Compact packed form shared by storage, cache and clients.
- engine: Last-match-wins evaluation over one rule set.
- evaluator: Named permission questions on top of the engine.
"""
