"""shotmover - move photos and videos from a card to local, relay and cloud destinations."""
