"""Visual verification pass contracts and orchestration."""
