# Document integrity services
