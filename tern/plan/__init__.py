"""Plan mode: plan documents, their store, Markdown export and the task scheduler."""
