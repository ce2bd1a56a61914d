"""Payment-backed cooldown bypass: authorization state machine, workflow and processor client."""
