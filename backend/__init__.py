"""HTTP surface for the tourist identity subsystem"""
