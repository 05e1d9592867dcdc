"""Input validation and sanitisation."""