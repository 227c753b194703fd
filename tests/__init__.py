# AuthLab Test Suite
