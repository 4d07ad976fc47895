"""HTTP sync gateway shared by all timing stations of a race."""
