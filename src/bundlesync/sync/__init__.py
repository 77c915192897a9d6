"""Bundle publishing and two-way sync with the commerce platform."""
