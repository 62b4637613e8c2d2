"""Company Communicator: notification preparation and delivery pipeline."""
