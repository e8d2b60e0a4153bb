"""IPGate upstream proxy — forwards permitted traffic to the protected application."""
