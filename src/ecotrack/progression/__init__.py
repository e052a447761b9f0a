"""Progression fan-out pipeline: streaks, points, badges, milestones, challenges, feed."""
