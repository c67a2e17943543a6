"""
modtasks - Deferred, monitored and cancellable moderation for Discord

modtasks turns natural-language moderator instructions such as
"timeout @alice after 5 minutes unless she says sorry" into durable tasks that
run later, watch the target first, or are called off when the target says the
right thing.

Core Components:

- **NLP**: Rule-based extraction of the action, target, delay, monitoring
  window, conditions and cancel phrases from an instruction
- **Tasks**: Task table with a guarded state machine, whole-table persistence
  (JSON file or SQLite) and a periodic sweep; per-task timers behind a
  swappable clock
- **Monitoring**: Feeds the target's messages into cancel-condition checks
- **Bot**: py-cord cog with slash commands and the Discord action executor

Usage:
    from modtasks.main import main
    main()  # Starts the bot
"""
