"""Fleet simulation: geodesy, motion profiles, fault hooks and the tick engine."""
